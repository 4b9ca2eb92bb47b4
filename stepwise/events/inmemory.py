"""In-memory event sink for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional

from ..constants import DEFAULT_EVENT_BUFFER_SIZE
from ..models import LifecycleEvent
from .base import BaseEventSink


class InMemoryEventSink(BaseEventSink):
    """Keeps the most recent events and queues them per topic.

    Both the history and each topic queue hold at most ``max_events``
    entries; the oldest are dropped first.
    """

    def __init__(self, max_events: int = DEFAULT_EVENT_BUFFER_SIZE) -> None:
        self.max_events = max_events
        self.events: Deque[LifecycleEvent] = deque(maxlen=max_events)
        self._queues: Dict[str, Deque[LifecycleEvent]] = defaultdict(
            lambda: deque(maxlen=max_events)
        )
        self._lock = asyncio.Lock()

    async def publish(self, event: LifecycleEvent) -> None:
        async with self._lock:
            self.events.append(event)
            self._queues[event.topic].append(event)

    def topics(self, execution_id: Optional[str] = None) -> List[str]:
        """Published topics in order, optionally for one execution."""
        return [
            e.topic
            for e in self.events
            if execution_id is None or e.execution_id == execution_id
        ]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[LifecycleEvent]:
        """Yield events published to ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                event = self._queues[topic].popleft() if self._queues[topic] else None
            if event is not None:
                yield event
                continue

            await asyncio.sleep(0.05)
