"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Dim happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  AuthConfig: the identity subsystem never reads Settings directly. The app
      builds one frozen AuthConfig at startup (Settings.auth_config()) and hands
      it to the token issuer, the forwarded-auth bridge, and the cookie helper.
      Nothing downstream can mutate it.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies on
  key entropy -- a short key weakens every token.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. Tokens signed with a random per-process key would be
  invalidated on every restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or catalog/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dim.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


@dataclass(frozen=True)
class AuthConfig:
    """Immutable identity settings, built once at startup."""

    secret_key: str
    token_expire_seconds: int
    secure_cookies: bool
    forwarded_auth_enabled: bool
    forwarded_user_header: str


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    database_url: str = f"sqlite:///{_DATA_DIR / 'dim.db'}"
    # Attempts per write transaction before WriteConflict is reported.
    write_retry_limit: int = 5

    # Uploaded avatars land here; whoami exposes them as /images/<file>.
    metadata_path: Path = _DATA_DIR / "metadata"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # One week. Media clients stay signed in across evenings.
    token_expire_seconds: int = 7 * 24 * 3600

    # Reverse-proxy login. Only enable behind a proxy that strips or
    # overwrites the header on every inbound request.
    forwarded_user_auth: bool = False
    forwarded_user_header: str = "X-Forwarded-User"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.write_retry_limit < 1:
            raise ValueError("WRITE_RETRY_LIMIT must be at least 1.")
        return self

    def auth_config(self) -> AuthConfig:
        """Snapshot the identity-related settings into a frozen AuthConfig."""
        return AuthConfig(
            secret_key=self.secret_key,
            token_expire_seconds=self.token_expire_seconds,
            secure_cookies=self.secure_cookies,
            forwarded_auth_enabled=self.forwarded_user_auth,
            forwarded_user_header=self.forwarded_user_header,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
