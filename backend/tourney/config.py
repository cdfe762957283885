"""Application configuration management"""

import json
import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Required security configuration is missing or unusable."""


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Tourney Platform"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = "sqlite:///./tourney.db"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Access tokens
    JWT_SECRET: str = ""
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Refresh tokens
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    REMEMBER_ME_EXPIRE_DAYS: int = 30
    REFRESH_TOKEN_RETENTION_DAYS: int = 30

    # CSRF
    CSRF_SECRET: str = ""
    CSRF_TOKEN_MAX_AGE_HOURS: int = 24
    CSRF_HEADER_NAME: str = "X-CSRF-Token"

    # PII encryption (hex key or passphrase)
    ENCRYPTION_KEY: str = ""

    # Cookies
    COOKIE_SECURE: Optional[bool] = None
    COOKIE_SAMESITE: str = "lax"

    # Idle session (client side)
    IDLE_TIMEOUT_MINUTES: int = 30
    IDLE_WARNING_MINUTES: int = 2

    # Rate Limiting
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_PER_HOUR: int = 1000
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10
    LOGIN_RATE_LIMIT_PER_HOUR: int = 50
    REFRESH_RATE_LIMIT_PER_MINUTE: int = 30

    # Account lockout
    MAX_FAILED_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Owner bootstrap
    OWNER_EMAIL: str = ""
    OWNER_PASSWORD: str = ""

    # Database initialization discipline
    DB_INIT_MODE: str = "create_all"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cookie_secure(self) -> bool:
        if self.COOKIE_SECURE is None:
            return self.is_production
        return self.COOKIE_SECURE

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def require_jwt_secret(self) -> str:
        """Return the token-signing secret, failing hard when it is unset."""
        if not self.JWT_SECRET:
            raise ConfigurationError(
                "FATAL: JWT_SECRET is not set. Generate one with `openssl rand -hex 32`."
            )
        return self.JWT_SECRET

    def resolve_csrf_secret(self) -> str:
        """
        Return the CSRF HMAC secret.

        Falls back to a per-process random value when CSRF_SECRET is unset;
        every issued CSRF token then stops verifying after a restart and
        across workers.
        """
        if not self.CSRF_SECRET:
            self.CSRF_SECRET = secrets.token_hex(32)
            logger.warning(
                "CSRF_SECRET not set - using a random per-process secret; "
                "CSRF tokens will not survive restarts"
            )
        return self.CSRF_SECRET

    def validate_security_settings(self) -> None:
        """
        Validate security configuration at startup.

        Raises:
            ConfigurationError: If the signing secret is missing, or insecure
                values are detected in production.
        """
        self.require_jwt_secret()
        self.resolve_csrf_secret()

        if not self.ENCRYPTION_KEY:
            logger.warning("ENCRYPTION_KEY not set - PII fields will be stored unencrypted")

        if 0 < self.IDLE_TIMEOUT_MINUTES <= self.IDLE_WARNING_MINUTES:
            logger.warning(
                "IDLE_WARNING_MINUTES (%s) >= IDLE_TIMEOUT_MINUTES (%s); idle warning disabled",
                self.IDLE_WARNING_MINUTES,
                self.IDLE_TIMEOUT_MINUTES,
            )

        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "change-me",
            "dev-secret",
        }
        if self.JWT_SECRET in insecure_secret_markers or len(self.JWT_SECRET) < 32:
            raise ConfigurationError(
                "Insecure JWT_SECRET for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
