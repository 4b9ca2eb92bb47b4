"""Redis pub/sub event sink for cross-process subscribers."""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..constants import EVENT_TOPIC_PREFIX
from ..models import LifecycleEvent
from .base import BaseEventSink

logger = logging.getLogger(__name__)


class RedisEventSink(BaseEventSink):
    """Publishes events on ``<prefix>:<topic>`` channels."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel_prefix: str = EVENT_TOPIC_PREFIX,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel_prefix = channel_prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def channel_for(self, topic: str) -> str:
        return f"{self.channel_prefix}:{topic}"

    async def publish(self, event: LifecycleEvent) -> None:
        if not self._redis:
            await self.connect()
        receivers = await self._redis.publish(
            self.channel_for(event.topic), event.to_json()
        )
        logger.debug(f"Published {event.topic} to {receivers} subscriber(s)")
