"""
O-Ring Configuration
====================
All tunables in one place. Pydantic Settings validates types at startup so
a bad port or a negative timeout fails before the first OAuth attempt, not
halfway through one.

Client credentials and tokens are NOT configured here; they live in the
settings store (see ``oring.store.settings_store``).
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Loaded from ``ORING_*`` environment variables or a .env file."""

    # --- Oura endpoints ---
    authorize_url: str = "https://cloud.ouraring.com/oauth/authorize"
    token_url: str = "https://api.ouraring.com/oauth/token"
    api_base_url: str = "https://api.ouraring.com/v2/usercollection"
    scope: str = "daily"

    # --- Loopback callback listener ---
    # redirect_uri must match what is registered with the Oura application
    redirect_uri: str = "http://localhost:8080/callback"
    callback_host: str = "127.0.0.1"
    callback_port: int = Field(default=8080, ge=0, le=65535)
    callback_timeout_seconds: float = Field(default=300.0, gt=0)

    # --- Outbound HTTP ---
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # --- Scores ---
    lookback_days: int = Field(default=7, ge=0)
    # Treat the access token as expired this many seconds early
    expiry_margin_seconds: int = Field(default=300, ge=0)

    # --- Storage ---
    settings_path: Path = Path.home() / ".config" / "oring" / "settings.json"

    # --- App settings ---
    log_level: str = "INFO"

    model_config = {"env_prefix": "ORING_", "env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
