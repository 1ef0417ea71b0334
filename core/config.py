"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for evBlog happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Dev mode generates a SECRET_KEY with a warning, production mode
      refuses to start without one, and secure_cookies follows the mode unless
      set explicitly.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session JWTs and
       the OAuth state cookie are both signed with it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("evblog.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'evblog_auth.db'}"


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

    debug: bool = False
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Passwords and sessions
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    # None means "follow the mode": secure outside debug, plain HTTP in debug.
    secure_cookies: Optional[bool] = None
    session_max_age_seconds: int = 30 * 24 * 60 * 60
    session_update_age_seconds: int = 24 * 60 * 60

    # ------------------------------------------------------------------
    # Email verification and password reset
    # ------------------------------------------------------------------

    verification_token_ttl_seconds: int = 24 * 60 * 60
    reset_token_ttl_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # memory:// keeps counters per process. Point at redis://host:6379 to share
    # counters across workers.
    rate_limit_storage_uri: str = "memory://"
    rate_limit_fail_open: bool = False

    signup_max_attempts: int = 3
    signup_window_seconds: int = 15 * 60
    forgot_password_max_attempts: int = 3
    forgot_password_window_seconds: int = 60 * 60
    reset_password_max_attempts: int = 5
    reset_password_window_seconds: int = 15 * 60

    # slowapi limit string for POST /api/auth/signin
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Resolve a provider login to an existing user with the same email. When
    # false, such a login is refused until the account is linked some other way.
    oauth_merge_by_email: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7] and resolve the cookie Secure flag.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
