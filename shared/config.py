"""
Service configuration.

Values come from environment variables prefixed with ``FULFILLMENT_`` (or a
local ``.env`` file), e.g. ``FULFILLMENT_CARRIER_MAX_ATTEMPTS=5``.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).parent.parent

LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


class Settings(BaseSettings):
    """Runtime settings for the fulfillment service."""

    model_config = SettingsConfigDict(
        env_prefix="FULFILLMENT_",
        env_file=".env",
        extra="ignore",
    )

    data_dir: Path = Field(PROJECT_ROOT / "data", description="Directory with JSON fixtures")
    carriers_file: str = Field("carriers.json", description="Carrier catalog file inside data_dir")
    log_level: str = Field("INFO", description="Root log level")

    # Carrier API calls
    carrier_timeout_seconds: float = Field(10.0, gt=0)
    carrier_max_attempts: int = Field(4, ge=1)
    carrier_backoff_initial: float = Field(0.5, ge=0)
    carrier_backoff_max: float = Field(8.0, ge=0)
    carrier_backoff_jitter: float = Field(0.5, ge=0)
    breaker_failure_threshold: int = Field(5, ge=1)
    breaker_recovery_seconds: float = Field(60.0, gt=0)
    poll_workers: int = Field(4, ge=1)

    # Notification delivery
    notification_max_attempts: int = Field(3, ge=1)
    notification_backoff_initial: float = Field(0.2, ge=0)
    notification_backoff_max: float = Field(5.0, ge=0)
    notification_workers: int = Field(4, ge=1)
    dispatch_workers: int = Field(2, ge=1, description="Threads handling notification events")
    dedupe_ttl_seconds: int = Field(7 * 24 * 3600, ge=1, description="Dedupe index retention")

    default_timezone: str = Field("Asia/Kolkata")

    @property
    def carriers_path(self) -> Path:
        return Path(self.data_dir) / self.carriers_file


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (environment is read once)."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the same way for every entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
