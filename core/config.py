"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthCore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance in a constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing signing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright. HS256
       signing relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), a missing signing secret
       is a hard startup failure raised as ConfigurationError.

  Access tokens, refresh tokens and the session cookie each get their own
  secret, and the three must differ. A leaked access-token key cannot mint
  refresh tokens or forge step-up cookies.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError

logger = logging.getLogger("authcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authcore.db'}"


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
    app_name: str = "AuthCore"
    database_url: str = _DEFAULT_DB_URL
    cors_origins: str = "http://localhost:3000"
    allowed_hosts: str = "localhost,127.0.0.1,*.localhost"

    # ------------------------------------------------------------------
    # Token signing
    #
    # Empty string is the sentinel for "not configured". The validator
    # either generates a dev secret or raises, so callers never see "".
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    # Signs the SessionMiddleware cookie (2FA step-up record, OAuth state)
    session_secret: str = ""
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # ------------------------------------------------------------------
    # Sessions and one-time secrets
    # ------------------------------------------------------------------

    session_expire_days: int = 30
    verification_code_expire_minutes: int = 10
    password_reset_expire_minutes: int = 60
    # bcrypt cost factor for passwords and every hashed secret
    password_hash_rounds: int = 12

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    two_factor_step_up_seconds: int = 300

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_app_id: str = ""
    facebook_app_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting (slowapi limit strings)
    # ------------------------------------------------------------------

    strict_rate_limit: str = "5/minute"
    auth_rate_limit: str = "10/15minutes"
    api_rate_limit: str = "100/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if any secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject any
            two secrets that are equal.
        """
        for field_name in ("jwt_secret", "jwt_refresh_secret", "session_secret"):
            value = getattr(self, field_name)
            if not value:
                if not self.debug:
                    raise ConfigurationError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field_name, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field_name.upper())
            elif len(value) < 32:
                raise ConfigurationError(f"{field_name.upper()} must be at least 32 characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ConfigurationError("JWT_SECRET and JWT_REFRESH_SECRET must differ.")
        if self.session_secret in (self.jwt_secret, self.jwt_refresh_secret):
            raise ConfigurationError("SESSION_SECRET must differ from both JWT secrets.")
        if not 4 <= self.password_hash_rounds <= 31:
            raise ConfigurationError("PASSWORD_HASH_ROUNDS must be between 4 and 31.")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def allowed_hosts_list(self) -> list[str]:
        return [host.strip() for host in self.allowed_hosts.split(",") if host.strip()]

    @property
    def enabled_oauth_providers(self) -> list[str]:
        providers: list[str] = []
        if self.google_client_id and self.google_client_secret:
            providers.append("google")
        if self.facebook_app_id and self.facebook_app_secret:
            providers.append("facebook")
        return providers


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly
    and pass it to the services.
    """
    return Settings()
