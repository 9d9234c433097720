"""Runtime settings for SignTrail.

Values come from ``SIGNTRAIL_*`` environment variables (or a ``.env``
file) with sensible local defaults::

    SIGNTRAIL_DATA_DIR=/srv/signtrail
    SIGNTRAIL_VERIFICATION_BASE_URL=https://sign.example.org
    SIGNTRAIL_IDENTITY_URL=https://auth.example.org
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SIGNTRAIL_DIR = Path.home() / ".signtrail"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SIGNTRAIL_", env_file=".env", extra="ignore"
    )

    # Storage
    data_dir: Path = DEFAULT_SIGNTRAIL_DIR
    public_base_url: str = Field(
        default="",
        description="Prefix for rendered file URLs; empty means file:// URIs",
    )

    # Verification
    verification_base_url: str = "http://localhost:5173"
    max_pin_attempts: int = Field(default=3, ge=1)
    lockout_minutes: int = Field(default=30, ge=1)
    access_code_length: int = Field(default=6, ge=4, le=12)

    # Session refresh
    refresh_lock_prefix: int = Field(default=20, ge=8)
    refresh_grace_seconds: float = 5.0
    refresh_stale_seconds: float = 30.0
    access_cookie_name: str = "sb-access-token"
    refresh_cookie_name: str = "sb-refresh-token"
    cookie_secure: bool = False
    cookie_max_age: int = 60 * 60 * 24 * 7

    # Identity provider (GoTrue-compatible)
    identity_url: str = "http://localhost:54321"
    identity_api_key: Optional[str] = None
    identity_timeout_seconds: float = 10.0


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
