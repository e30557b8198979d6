############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# settings.py: Application configuration and environment settings
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Application settings using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    try:
        from importlib.metadata import version
        return version("clawster")
    except Exception:
        pass
    # Fallback: read pyproject.toml directly (works in dev without pip install)
    try:
        import tomllib
        toml_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except Exception:
        return "0.0.0"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.prod"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Clawster"
    app_version: str = Field(default_factory=_get_version)
    debug: bool = False
    reload: bool = False
    public_base_url: str = "https://clawster.run"

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./clawster.db")
    database_echo: bool = False
    database_auto_create: bool = True

    # Security (sessions are issued by the auth service; we only verify them)
    secret_key: str = Field(default="dev-secret-key-change-in-production")
    session_cookie_name: str = "clawster_session"
    session_max_age_seconds: int = 86400 * 7

    # Phala Cloud provisioning
    phala_api_url: str = "https://cloud-api.phala.network/api/v1"
    phala_api_key: Optional[str] = None
    bot_image: str = "ghcr.io/mcclowin/openclaw-tee:latest"
    bot_name_prefix: str = "clawster-"
    default_model: str = "anthropic/claude-sonnet-4-20250514"
    bot_node_options: str = "--max-old-space-size=1536"

    # Remote call policy
    provider_request_timeout: float = 15.0
    provider_retry_max_attempts: int = 3
    provider_retry_backoff: float = 1.0
    liveness_probe_timeout: float = 3.0

    # Reconciliation
    booting_timeout_seconds: int = 900

    # Billing (Stripe)
    billing_enabled: bool = False
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_price_id_small: Optional[str] = None
    stripe_price_id_medium: Optional[str] = None

    # Usage metering
    meter_enabled: bool = True
    meter_interval_seconds: int = 3600  # one bot-hour

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",")]
        return v

    def get_price_id(self, size: str) -> Optional[str]:
        """Get the Stripe price ID for an instance size.

        Falls back to the generic price ID when no size-specific one is set.
        """
        size_price = getattr(self, f"stripe_price_id_{size.lower()}", None)
        return size_price or self.stripe_price_id


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
