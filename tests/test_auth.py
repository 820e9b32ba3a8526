import base64
import json
import time
from types import SimpleNamespace

import jwt
import pytest

from auth import ADMIN_ROLE, AuthGate, has_role, issue_token, requires_auth, verify_token
from exceptions import AuthenticationError, AuthorizationError

from conftest import API_KEY, JWT_SECRET


def make_request(path="/api/logs", headers=None, query=None):
    return SimpleNamespace(
        url=SimpleNamespace(path=path),
        headers=headers or {},
        query_params=query or {},
    )


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


@pytest.fixture
def gate():
    return AuthGate(api_key=API_KEY, jwt_secret=JWT_SECRET)


class TestTokens:
    def test_issue_and_verify(self):
        token, expires_at = issue_token("user", JWT_SECRET, expires_in=3600)
        claims = verify_token(token, JWT_SECRET)
        assert claims.role == "user"
        assert claims.exp == int(expires_at.timestamp())

    def test_token_without_expiry(self):
        token, expires_at = issue_token("viewer", JWT_SECRET)
        assert expires_at is None
        assert verify_token(token, JWT_SECRET).exp is None

    def test_expired_token(self):
        token = jwt.encode({"role": "user", "exp": int(time.time()) - 10}, JWT_SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError, match="expired"):
            verify_token(token, JWT_SECRET)

    def test_tampered_payload(self):
        token, _ = issue_token("user", JWT_SECRET)
        header, _, signature = token.split(".")
        forged = ".".join([header, _b64({"role": ADMIN_ROLE}), signature])
        with pytest.raises(AuthenticationError):
            verify_token(forged, JWT_SECRET)

    def test_tampered_signature(self):
        token, _ = issue_token("user", JWT_SECRET)
        header, payload, signature = token.split(".")
        flipped = ("B" if signature[0] == "A" else "A") + signature[1:]
        with pytest.raises(AuthenticationError):
            verify_token(".".join([header, payload, flipped]), JWT_SECRET)

    def test_wrong_secret(self):
        token, _ = issue_token("user", "another-signing-secret-of-reasonable-length")
        with pytest.raises(AuthenticationError):
            verify_token(token, JWT_SECRET)

    def test_fractional_expiry_accepted(self):
        token = jwt.encode({"role": "user", "exp": time.time() + 3600}, JWT_SECRET, algorithm="HS256")
        claims = verify_token(token, JWT_SECRET)
        assert claims.role == "user"
        assert claims.exp > time.time()

    def test_non_numeric_expiry_rejected(self):
        token = jwt.encode({"role": "user", "exp": "tomorrow"}, JWT_SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError):
            verify_token(token, JWT_SECRET)

    def test_missing_role_claim(self):
        token = jwt.encode({"sub": "someone"}, JWT_SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError, match="role"):
            verify_token(token, JWT_SECRET)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed(self, token):
        with pytest.raises(AuthenticationError):
            verify_token(token, JWT_SECRET)

    def test_issue_requires_role(self):
        with pytest.raises(ValueError):
            issue_token("  ", JWT_SECRET)


class TestCredentialExtraction:
    def test_authorization_header_wins(self):
        request = make_request(
            headers={"authorization": "ApiKey from-header", "x-api-key": "from-x-header"},
            query={"api_key": "from-query"},
        )
        assert AuthGate.extract_credential(request) == "from-header"

    def test_bearer_scheme(self):
        request = make_request(headers={"authorization": "Bearer a.b.c"})
        assert AuthGate.extract_credential(request) == "a.b.c"

    def test_unknown_scheme_falls_through(self):
        request = make_request(headers={"authorization": "Basic xyz", "x-api-key": "from-x-header"})
        assert AuthGate.extract_credential(request) == "from-x-header"

    def test_query_parameter_last(self):
        assert AuthGate.extract_credential(make_request(query={"api_key": "from-query"})) == "from-query"

    def test_no_credential(self):
        assert AuthGate.extract_credential(make_request()) is None


class TestAuthGate:
    def test_api_key_is_admin(self, gate):
        assert gate.authenticate(API_KEY) == (ADMIN_ROLE, True)

    def test_wrong_api_key(self, gate):
        assert gate.authenticate("not-the-key") == (None, False)
        assert gate.authenticate(None) == (None, False)

    def test_token_role(self, gate):
        token, _ = issue_token("viewer", JWT_SECRET, expires_in=60)
        assert gate.authenticate(token) == ("viewer", True)

    def test_tokens_rejected_without_secret(self):
        token, _ = issue_token("user", JWT_SECRET)
        assert AuthGate(api_key=API_KEY).authenticate(token) == (None, False)

    def test_authorize_by_exact_path(self, gate):
        assert gate.authorize("/api/logs", "user")
        assert not gate.authorize("/api/logs", "viewer")
        assert gate.authorize("/api/logs", ADMIN_ROLE)
        assert not gate.authorize("/api/auth/token", "user")
        # unlisted paths only need a valid credential
        assert gate.authorize("/api/traces/abc/end", "viewer")

    def test_check_missing_credential(self, gate):
        with pytest.raises(AuthenticationError):
            gate.check(make_request())

    def test_check_forbidden_role(self, gate):
        token, _ = issue_token("viewer", JWT_SECRET)
        request = make_request(headers={"authorization": f"Bearer {token}"})
        with pytest.raises(AuthorizationError):
            gate.check(request)

    def test_check_returns_role(self, gate):
        token, _ = issue_token("user", JWT_SECRET)
        request = make_request(path="/api/metrics", headers={"authorization": f"Bearer {token}"})
        assert gate.check(request) == "user"

    def test_disabled_gate_allows_everything(self):
        gate = AuthGate()
        assert not gate.enabled
        assert gate.check(make_request(path="/api/auth/token")) is None


def test_has_role():
    assert has_role("anything", None)
    assert has_role(ADMIN_ROLE, "user")
    assert has_role("user", "user")
    assert not has_role(None, "user")


@pytest.mark.parametrize("path,expected", [
    ("/health", False),
    ("/api/health", False),
    ("/", True),
    ("/docs", True),
    ("/openapi.json", True),
    ("/unknown", True),
    ("/api/logs", True),
    ("/api/traces/123/end", True),
])
def test_requires_auth(path, expected):
    assert requires_auth(path) is expected
