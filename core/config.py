"""
core/config.py -- Settings for the auth core, read once via pydantic-settings.

Every tunable (databases, limiter windows, provider timeout, OIDC client,
HTTP hosts) lives on Settings. Field names map to environment variables
(provider_timeout_seconds -> PROVIDER_TIMEOUT_SECONDS) and an optional .env
file. Modules call get_settings(); nothing else touches os.environ.

get_settings() is lru_cached, so the first call fixes the values for the
process. Tests that change the environment call get_settings.cache_clear().

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. OTP codes are
       stored as HMAC-SHA256 under this key -- a short key weakens that.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would invalidate every
       pending OTP challenge on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


class Settings(BaseSettings):
    """Auth core settings. Every field has a default; only SECRET_KEY must be
    supplied outside DEBUG mode.
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
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    session_db_url: str = f"sqlite:///{_DATA_DIR / 'session.db'}"
    user_db_url: str = f"sqlite:///{_DATA_DIR / 'users.db'}"

    # ------------------------------------------------------------------
    # Identity provider
    # ------------------------------------------------------------------

    provider_timeout_seconds: float = 15.0
    otp_expiry_minutes: int = 5

    # Generic OIDC for federated sign-in. Empty client id disables it.
    oidc_client_id: str = ""
    oidc_discovery_url: str = "https://accounts.google.com/.well-known/openid-configuration"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    # Stricter 10-digit "starts with 6-9" phone rule for the Indian market.
    india_only_phone: bool = True

    # ------------------------------------------------------------------
    # Rate limiting (per identifier, sliding window)
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_minutes: int = 15
    signup_max_attempts: int = 5
    signup_window_minutes: int = 15
    phone_max_attempts: int = 3
    phone_window_minutes: int = 10
    otp_max_attempts: int = 5
    otp_window_minutes: int = 10

    # Per-IP limit applied by slowapi in front of the HTTP credential routes.
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Connectivity probe
    # ------------------------------------------------------------------

    # Off by default: the local provider needs no network. Turn on when the
    # provider (or federated sign-in) is remote.
    connectivity_probe: bool = False
    connectivity_probe_host: str = "8.8.8.8"
    connectivity_probe_port: int = 53

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # JSON list in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key and not self.debug:
            raise ValueError("SECRET_KEY must be set unless DEBUG=true (OTP challenges are keyed by it).")
        if not self.secret_key:
            self.secret_key = secrets.token_hex(32)
            logger.warning("No SECRET_KEY set; using a generated key. Pending OTP challenges will not survive a restart.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        """A non-positive provider timeout would fail every attempt as NETWORK."""
        if self.provider_timeout_seconds <= 0:
            raise ValueError("PROVIDER_TIMEOUT_SECONDS must be positive.")
        if self.otp_expiry_minutes <= 0:
            raise ValueError("OTP_EXPIRY_MINUTES must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call."""
    return Settings()
