"""
Settings and environment management for the flag rollout service.

Configuration is loaded with pydantic-settings from environment variables and
an optional `.env` file, and cached as a singleton through `get_settings()`.

Environment Variables:
- DATABASE_URL: PostgreSQL connection string for events and rollout state
- SLACK_WEBHOOK_URL: Incoming webhook used for rollback alerts and completion notices
- EVENT_BATCH_SIZE / EVENT_FLUSH_INTERVAL_SECONDS / EVENT_MAX_BUFFER_SIZE: Event Recorder tuning
- ROLLOUT_TICK_INTERVAL_SECONDS: How often the Rollout Controller evaluates rollouts
- LOG_LEVEL: Root logging level

Usage:
    from flag_rollout.core.config import get_settings

    settings = get_settings()
    batch_size = settings.event_batch_size
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        database_url: PostgreSQL connection string. When unset the API starts
            but the storage-backed services are not wired.
        slack_webhook_url: Slack incoming webhook URL for operator notifications.
        event_batch_size: Buffered events that trigger an immediate flush.
        event_flush_interval_seconds: Period of the background flush timer.
        event_max_buffer_size: Hard cap on buffered events; oldest are dropped beyond it.
        rollout_tick_interval_seconds: Period of the rollout evaluation timer.
        rollout_stats_window_hours: Trailing window used to refresh rollout stats.
        rollout_worker_concurrency: Rollouts evaluated concurrently per tick.
        status_write_attempts: Consecutive failed status writes before a rollout fails.
        significance_min_total_users: Total users needed to call a test significant.
        feedback_score_floor: Feedback score (out of 5) below which a rollout is stopped.
        log_level: Root logging level.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
    )

    # =========================================================================
    # External services
    # =========================================================================

    database_url: Optional[str] = None
    slack_webhook_url: Optional[str] = None

    # =========================================================================
    # Event Recorder
    # =========================================================================

    event_batch_size: int = Field(default=10, ge=1)
    event_flush_interval_seconds: float = Field(default=5.0, gt=0)
    event_max_buffer_size: int = Field(default=10_000, ge=1)

    # =========================================================================
    # Rollout Controller
    # =========================================================================

    rollout_tick_interval_seconds: float = Field(default=3600.0, gt=0)
    rollout_stats_window_hours: float = Field(default=24.0, gt=0)
    rollout_worker_concurrency: int = Field(default=4, ge=1)
    status_write_attempts: int = Field(default=3, ge=1)

    # =========================================================================
    # Significance and safety thresholds
    # These mirror the documented heuristics; override them only deliberately,
    # they change observable decisions.
    # =========================================================================

    significance_min_total_users: int = Field(default=100, ge=0)
    feedback_score_floor: float = Field(default=2.0, ge=0, le=5)

    log_level: str = 'INFO'

    @model_validator(mode="after")
    def _check_buffer_size(self) -> "Settings":
        if self.event_max_buffer_size < self.event_batch_size:
            raise ValueError("event_max_buffer_size must be >= event_batch_size")
        return self


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    To refresh settings in tests, clear the cache:
        >>> get_settings.cache_clear()
    """
    return Settings()
