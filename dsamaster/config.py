"""
Configuration settings for the dsa-master mastery engine.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path.home() / ".dsamaster" / "mastery.db"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DSAMASTER_",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_DB_PATH}",
        description="SQLAlchemy connection string for the local store",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Mastery Scoring
    # ========================================
    recency_decay: float = Field(
        default=0.9,
        gt=0,
        le=1,
        description="Per-day decay factor applied to attempt weights (half-life ~6.6 days)",
    )
    trend_dead_zone: float = Field(
        default=5.0,
        ge=0,
        description="Score delta that must be exceeded before a trend is reported",
    )
    mastery_transaction_scope: Literal["topic", "batch"] = Field(
        default="topic",
        description="One transaction per topic group, or one for the whole quiz update",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
