"""
core/config.py -- Environment-driven settings for the member portal auth service.

Every environment variable the service reads is declared on Settings below.
Other modules call get_settings() (or receive a Settings instance) and never
read os.environ themselves.

get_settings() is wrapped in lru_cache, so the environment and .env file are
parsed once per process. Tests build Settings(...) directly with explicit
values instead of going through the cache.

Field names map to upper-case environment variables (secret_key ->
SECRET_KEY, bcrypt_rounds -> BCRYPT_ROUNDS). pydantic-settings handles the
type coercion; the model_validator enforces the rules that span fields.

SECRET_KEY signs every JWT and keys the HMAC under which refresh tokens are
stored, so it has to be at least 32 characters. Without DEBUG=true a missing
key is fatal; with it, a throwaway key is generated and every session dies at
restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("memberportal.config")


class Settings(BaseSettings):
    """Auth service settings, read from the environment and an optional .env file.

    Everything has a default except the secret key, which the validator either
    generates (DEBUG) or demands.
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
    # "" means unset; check_secret_and_ttls() replaces it or raises.
    secret_key: str = ""
    database_url: str = "sqlite:///./memberportal_auth.db"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # bcrypt cost factor. 4 is the library minimum; tests use it for speed.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    refresh_cookie_name: str = "refresh_token"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def check_secret_and_ttls(self) -> "Settings":
        """Resolve SECRET_KEY and check the token lifetimes against each other.

        DEBUG=true with no key: generate one and warn. Nothing issued survives
        a restart, which is fine on a laptop.

        DEBUG unset with no key: refuse to start. A random key would silently
        invalidate every stored refresh token on the next deploy.

        The access lifetime must be shorter than the refresh lifetime.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated a throwaway key (DEBUG). Sessions end at restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set it in the environment or .env, or set DEBUG=true for local development."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.access_token_expire_seconds >= self.refresh_token_expire_seconds:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be shorter than REFRESH_TOKEN_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, parsing the environment on first call.

    Tests that change environment variables call get_settings.cache_clear()
    before and after.
    """
    return Settings()
