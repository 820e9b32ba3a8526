import pytest
from fastapi.testclient import TestClient

from config import Settings
from db import Database
from main import create_app

API_KEY = "test-admin-api-key"
JWT_SECRET = "test-signing-secret-with-enough-entropy-0123456789"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'insight-test.db'}"


@pytest.fixture
async def store(database_url):
    database = Database()
    await database.initialize(database_url, retries=1, retry_delay=0)
    try:
        yield database
    finally:
        await database.close()


@pytest.fixture
def make_client(database_url):
    """Build a TestClient around a fresh app; keyword arguments override Settings."""
    clients = []

    def _make(**overrides) -> TestClient:
        values = {
            "DATABASE_URL": database_url,
            "RATE_LIMIT": 1000,
            "DB_CONNECT_RETRIES": 1,
            "DB_RETRY_DELAY": 0.0,
            "API_KEY": None,
            "JWT_SECRET": None,
        }
        values.update(overrides)
        app = create_app(Settings(**values), Database())
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
