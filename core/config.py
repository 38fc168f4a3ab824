"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Konabra happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.
Components never call get_settings() themselves either: api/context.py reads
the settings once and hands plain values to each constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, protector_master_key ->
      PROTECTOR_MASTER_KEY). jwt_audience is a list and is read as JSON,
      e.g. JWT_AUDIENCE='["konabra-web", "konabra-mobile"]'.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode (DEBUG=true) generates missing secrets with a
      warning; production mode refuses to start without them.

Security notes:
  SECRET_KEY shorter than 32 bytes is rejected outright. JWT HMAC-SHA256
  signing relies on key entropy -- a short key weakens every session token.

  PROTECTOR_MASTER_KEY must be base64 that decodes to exactly 64 bytes. It is
  expanded with HKDF into separate encryption and authentication keys, so a
  single provisioning secret never serves two purposes directly.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
secure/, or cache/.
"""

import base64
import binascii
import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("konabra.config")

MIN_SECRET_BYTES = 32
MASTER_KEY_BYTES = 64

_DEFAULT_SESSION_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'konabra_sessions.db'}"


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

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "konabra"
    jwt_audience: list[str] = Field(default_factory=lambda: ["konabra"])
    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)
    session_db_url: str = _DEFAULT_SESSION_DB_URL

    # ------------------------------------------------------------------
    # Verification envelopes and ephemeral state
    # ------------------------------------------------------------------

    # base64 of exactly 64 random bytes. Same sentinel rule as secret_key.
    protector_master_key: str = ""
    ephemeral_sweep_seconds: float = Field(default=60.0, gt=0)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY and PROTECTOR_MASTER_KEY policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions and pending verification codes will not survive a
            restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject a SECRET_KEY under 32 bytes and a master key that
            does not decode to exactly 64 bytes.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
        if len(self.secret_key.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_BYTES} bytes.")

        if not self.protector_master_key:
            if not self.debug:
                raise ValueError(
                    "PROTECTOR_MASTER_KEY is required in production mode. "
                    "Generate one with `python main.py keygen`."
                )
            self.protector_master_key = base64.b64encode(secrets.token_bytes(MASTER_KEY_BYTES)).decode("ascii")
            logger.warning(
                "WARNING: Using auto-generated PROTECTOR_MASTER_KEY. "
                "Pending verification codes will not survive a restart."
            )
        # Raises ValueError on a malformed key; pydantic turns it into a ValidationError.
        self.master_key_bytes()

        if self.refresh_token_expire_seconds < self.access_token_expire_seconds:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must not be shorter than ACCESS_TOKEN_EXPIRE_SECONDS.")
        return self

    def master_key_bytes(self) -> bytes:
        """Return the decoded 64-byte protector master key."""
        try:
            raw = base64.b64decode(self.protector_master_key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("PROTECTOR_MASTER_KEY must be valid base64.") from exc
        if len(raw) != MASTER_KEY_BYTES:
            raise ValueError(f"PROTECTOR_MASTER_KEY must decode to exactly {MASTER_KEY_BYTES} bytes, got {len(raw)}.")
        return raw


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
