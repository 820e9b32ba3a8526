"""Configuration for the insight telemetry service."""
import os
import logging
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional

logger = logging.getLogger("insight.config")


class Settings(BaseSettings):
    # Relational store
    DATABASE_URL: str = "sqlite+aiosqlite:///./insight.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 15
    DB_CONNECT_RETRIES: int = 3
    DB_RETRY_DELAY: float = 2.0

    # Application settings
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    ALLOWED_ORIGINS: List[str] = ["*"]

    # Admission control
    RATE_LIMIT: int = 60
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_SWEEP_INTERVAL: float = 300.0

    # Authentication; leaving both empty disables the auth gate
    API_KEY: Optional[str] = None
    JWT_SECRET: Optional[str] = None

    # Query endpoints
    DEFAULT_QUERY_LIMIT: int = 100
    MAX_QUERY_LIMIT: int = 1000

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def auth_enabled(self) -> bool:
        return bool(self.API_KEY or self.JWT_SECRET)

    def validate_settings(self):
        """Validate critical settings."""
        if self.RATE_LIMIT < 1:
            raise ValueError("RATE_LIMIT must be at least 1")

        if self.RATE_LIMIT_WINDOW_SECONDS <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be positive")

        if self.RATE_LIMIT_SWEEP_INTERVAL <= 0:
            raise ValueError("RATE_LIMIT_SWEEP_INTERVAL must be positive")

        if self.DEFAULT_QUERY_LIMIT < 1 or self.MAX_QUERY_LIMIT < self.DEFAULT_QUERY_LIMIT:
            raise ValueError("DEFAULT_QUERY_LIMIT must be between 1 and MAX_QUERY_LIMIT")

        if not self.auth_enabled and not self.DEBUG:
            logger.warning("Neither API_KEY nor JWT_SECRET is set; authentication is disabled")


settings = Settings()


# Validate settings on import
try:
    settings.validate_settings()
except ValueError as e:
    if not settings.DEBUG:
        raise e
    else:
        logger.warning(f"Configuration warning: {e}")


def get_environment_info(app_settings: Optional[Settings] = None) -> Dict[str, object]:
    """Get environment information for the root endpoint of the app built from ``app_settings``."""
    app_settings = app_settings or settings
    return {
        "kubernetes": bool(os.environ.get("KUBERNETES_SERVICE_HOST")),
        "debug": app_settings.DEBUG,
        "auth_enabled": app_settings.auth_enabled,
        "rate_limit": app_settings.RATE_LIMIT,
        "rate_limit_window_seconds": app_settings.RATE_LIMIT_WINDOW_SECONDS,
        "database_backend": app_settings.DATABASE_URL.split(":", 1)[0],
    }
