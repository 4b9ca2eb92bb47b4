from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_MAX_CONTINUATION_FAILURES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RETRY_DELAY_SECONDS,
    EVENT_TOPIC_PREFIX,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis event sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    channel_prefix: str = EVENT_TOPIC_PREFIX


class EventsConfig(BaseModel):
    """Lifecycle event sink settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    buffer_size: int = Field(default=DEFAULT_EVENT_BUFFER_SIZE, gt=0)
    redis: RedisConfig = Field(default_factory=RedisConfig)


class SchedulerConfig(BaseModel):
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    max_failures: int = Field(default=DEFAULT_MAX_CONTINUATION_FAILURES, gt=0)


class RetryDefaults(BaseModel):
    """Defaults applied to steps created without an explicit policy."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_delay_seconds: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    events: EventsConfig = Field(default_factory=EventsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retry: RetryDefaults = Field(default_factory=RetryDefaults)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_events = os.getenv("STEPWISE_EVENTS")
    if env_events:
        config.events.backend = env_events.lower()
    env_log_level = os.getenv("STEPWISE_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
