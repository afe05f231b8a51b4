"""Application configuration using Pydantic settings."""

from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def utc_now() -> datetime:
    """Current time in UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Current UTC time as naive datetime (for SQLAlchemy defaults).

    SQLite doesn't keep timezone info, so timestamps are stored as naive
    UTC and re-tagged with ``timezone.utc`` when read back.
    """
    return utc_now().replace(tzinfo=None)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FURLONG_",
        extra="ignore",
    )

    # Database
    db_path: Path = Path("./data/furlong.db")

    # App
    debug: bool = False
    log_level: str = "INFO"

    # Calibration lifecycle
    calibration_threshold: int = 500  # Completed races before fitting
    minimum_calibration_races: int = 100  # Partial analysis gate
    recalibration_threshold: int = 50  # New races that trigger a refit
    max_recalibration_age_days: int = 7
    history_limit: int = 20

    # Background work
    auto_log_delay_seconds: float = 0.1
    recalibration_check_minutes: int = 60

    @property
    def database_url(self) -> str:
        """SQLite database URL for SQLAlchemy."""
        return f"sqlite+aiosqlite:///{self.db_path}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Export for convenience
settings = get_settings()
