"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the tracker happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. auth_secret -> AUTH_SECRET).

  @model_validator(mode="after"): Applies the AUTH_SECRET policy once all
      fields are resolved.

Security notes:
  [S1] A missing AUTH_SECRET falls back to a well-known development value.
       That value is public, so any deployment outside local development must
       override it. Production mode refuses to start without one.

  [S2] AUTH_SECRET shorter than 32 chars is rejected outright. The session
       signature is HMAC-SHA256 and relies on key entropy.

  Changing AUTH_SECRET invalidates every outstanding session token at once.
  There is no key rotation.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or projects/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("pmtracker.config")

INSECURE_DEV_SECRET = "local-dev-auth-secret-change-in-production"

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'pmtracker.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: str = "development"  # "development", "test", "production"
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator below
    # substitutes the development secret or raises, so callers never see "".
    auth_secret: str = ""
    secure_cookies: bool = False
    invitation_expire_seconds: int = 60 * 60 * 24 * 7

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_auth_secret(self) -> "Settings":
        """Enforce the AUTH_SECRET policy [S1][S2].

        Production: AUTH_SECRET is mandatory and cookies are always Secure.
        Elsewhere: fall back to INSECURE_DEV_SECRET with a warning so local
            development works out of the box and sessions survive restarts.
        """
        if not self.auth_secret:
            if self.is_production:
                raise ValueError(
                    "AUTH_SECRET is required in production. "
                    "Set AUTH_SECRET in your environment or .env file."
                )
            self.auth_secret = INSECURE_DEV_SECRET
            logger.warning("AUTH_SECRET not set -- using the insecure development secret.")
        if len(self.auth_secret) < 32:
            raise ValueError("AUTH_SECRET must be at least 32 characters.")
        if self.is_production:
            self.secure_cookies = True
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
