"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the Notez credential core happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode (DEBUG=true) generates missing secrets with a
      warning; production mode refuses to start without them.

Security notes:
  [S1] Every secret shorter than 32 chars is rejected outright.
  [S2] Access and refresh tokens are signed with two different secrets. Equal
       values would let a leaked access token pass refresh verification, so
       the validator refuses them.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("notez.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'notez_auth.db'}"

_SECRET_FIELDS = ("secret_key", "jwt_access_secret", "jwt_refresh_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev value or raises, so callers never see "".
    secret_key: str = ""  # HMAC key for stored token hashes
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""

    # ------------------------------------------------------------------
    # Lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 60 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    session_expire_seconds: int = 7 * 24 * 60 * 60
    reset_token_expire_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    api_token_max_active: int = 20

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]
    secure_cookies: bool = False
    rate_limit_enabled: bool = True
    login_rate_limit: str = "5/15 minutes"
    password_reset_rate_limit: str = "3/hour"

    # ------------------------------------------------------------------
    # Email delivery (empty api key = log-only dispatcher)
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    email_from: str = "noreply@notez.local"
    app_name: str = "Notez"
    app_url: str = "http://localhost:5173"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy.

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if any secret is missing.

        Both modes: reject secrets shorter than 32 characters [S1] and
            identical access/refresh secrets [S2].
        """
        for name in _SECRET_FIELDS:
            if getattr(self, name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", name.upper())
        for name in _SECRET_FIELDS:
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
