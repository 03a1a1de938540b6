"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ScopeGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation of the two signing
      secrets once every field is resolved.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing secret is a hard
       startup failure. Dev mode generates random secrets with a warning.

  [M8] Access and refresh secrets must differ. A shared secret would let a
       refresh token pass signature verification on the access path.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("scopegate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'scopegate_auth.db'}"


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

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the "not configured" sentinel; the validator either
    # generates a dev secret or raises.
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_ttl_seconds: int = Field(default=900, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31. Tests drop this to 4.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # One-time passwords
    # ------------------------------------------------------------------

    otp_ttl_seconds: int = Field(default=300, gt=0)
    otp_rate_limit_window_seconds: int = Field(default=60, gt=0)
    otp_rate_limit_max: int = Field(default=3, gt=0)

    # ------------------------------------------------------------------
    # Social providers (empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""
    apple_client_id: str = ""
    apple_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"

    # When true, a social login whose external id is unknown may attach to an
    # existing account with the same (provider-verified) email.
    social_link_by_email: bool = True

    # Signs the Starlette session cookie that carries OAuth state between the
    # authorization redirect and the callback. Random per process when unset.
    session_secret: str = ""

    # ------------------------------------------------------------------
    # SMS delivery (Twilio). Unset -> codes are written to the log.
    # ------------------------------------------------------------------

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    sms_app_name: str = "ScopeGate"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Tokens will not survive restart.

        Production mode: refuse to start if either secret is missing.
        """
        for name in ("access_token_secret", "refresh_token_secret"):
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                        name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            elif len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        if not self.session_secret:
            self.session_secret = secrets.token_hex(32)
        return self

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
