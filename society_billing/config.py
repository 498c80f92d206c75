"""Application configuration from environment variables."""

import logging
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./society_billing.db",
        description="SQLAlchemy async connection string",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/server.log", description="Server log file")

    # Billing cycle
    cycle_max_workers: int = Field(
        default=8, ge=1, description="Members processed concurrently during a cycle"
    )
    member_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for one member's bill generation"
    )
    append_max_retries: int = Field(
        default=3, ge=0, description="Retries when the ledger tail moves under an append"
    )
    defaulter_months_threshold: int = Field(
        default=3, ge=1, description="Unpaid bills before a member is listed as defaulter"
    )

    # Ledger queries
    default_page_limit: int = Field(default=500, ge=1)
    max_page_limit: int = Field(default=1000, ge=1)

    # API
    api_title: str = Field(default="Society Billing API", description="API title")
    api_version: str = Field(default="0.1.0", description="API version")


_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance.

    Lazy-loaded so tests can set environment variables before first access.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
        logger.debug("Loaded settings: database_url=%s", _settings_instance.database_url)
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings (used by tests)."""
    global _settings_instance
    _settings_instance = None


__all__ = ["Settings", "get_settings", "reset_settings"]
