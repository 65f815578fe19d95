"""
Runtime configuration, loaded from environment variables (prefix DEFERQ_)
or a .env file.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from deferq.core.worker import (
    DEFAULT_MARKER_TTL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
)


class Settings(BaseSettings):
    """Settings shared by the worker CLI and applications embedding deferq."""

    model_config = SettingsConfigDict(
        env_prefix="DEFERQ_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Stores
    redis_url: str = "redis://localhost:6379/0"
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_database: str = "portal"

    # Queues
    key_prefix: str = "deferq"
    partitions: int = Field(default=1, ge=1)

    # Worker
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_backoff: float = DEFAULT_RETRY_BACKOFF  # seconds
    claim_timeout: float = 5.0
    heartbeat_interval: float = 10.0
    heartbeat_ttl: float = 30.0
    reaper_interval: float = 30.0
    applied_marker_ttl: float = DEFAULT_MARKER_TTL

    # Cache
    cache_ttl: float = 30.0

    # Upload lock (Redlock-style)
    lock_ttl: float = 30.0
    lock_retry_count: int = Field(default=0, ge=0)
    lock_retry_delay: float = 0.2
    lock_drift_factor: float = 0.01

    # Logging
    log_json: bool = True
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()
