"""Event sink factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .base import BaseEventSink
from .inmemory import InMemoryEventSink


def get_event_sink(
    backend: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> BaseEventSink:
    """Factory function to get the configured event sink."""

    config = config or load_config()
    backend = (
        backend or os.getenv("STEPWISE_EVENTS") or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventSink(max_events=config.events.buffer_size)
    elif backend == "redis":
        from .redis import RedisEventSink

        redis_conf = config.events.redis
        return RedisEventSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel_prefix=redis_conf.channel_prefix,
        )
    else:
        raise ValueError(f"Unsupported event sink backend: {backend}")


__all__ = ["BaseEventSink", "InMemoryEventSink", "get_event_sink"]
