"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Aperture Auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Type coercion and validation
      are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Implements the signing-secret policy: dev mode generates a
      key with a warning, production mode refuses to start without one.

Security notes:
  The signing secret is read from AUTH_JWT_SECRET, falling back to JWT_SECRET
  and then SECRET_KEY. It is resolved once per process and handed to
  auth.tokens.SessionCodec at construction; no module reads it ad hoc.

  Secrets shorter than 32 chars are rejected outright. HS256 signing relies on
  key entropy.

  Session, reset and verification TTLs are code constants (auth/tokens.py,
  auth/lifecycle.py), not settings, so the security posture stays auditable.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("aperture.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'aperture_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file, except the signing secret, which
    is validated by the model_validator below.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = Field(
        default="",
        validation_alias=AliasChoices("AUTH_JWT_SECRET", "JWT_SECRET", "SECRET_KEY", "secret_key"),
    )
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Links and mail
    # ------------------------------------------------------------------

    app_base_url: str = "http://localhost:3000"
    mail_log_dir: str = str(Path("content") / "logs")

    # ------------------------------------------------------------------
    # Cookies / HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Admin bootstrap (python main.py ensure-admin)
    # ------------------------------------------------------------------

    admin_email: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("app_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        value = value.strip()
        return value.rstrip("/") or "http://localhost:3000"

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if no
            secret is configured under any of the accepted names.

        Both modes: reject keys shorter than 32 characters.
        """
        self.secret_key = self.secret_key.strip()
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated AUTH_JWT_SECRET. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "AUTH_JWT_SECRET is required in production mode. "
                    "Set AUTH_JWT_SECRET (or JWT_SECRET) in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("AUTH_JWT_SECRET must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
