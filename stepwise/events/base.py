"""Base event sink interface for lifecycle notifications."""

from __future__ import annotations

import abc

from ..models import LifecycleEvent


class BaseEventSink(metaclass=abc.ABCMeta):
    """Abstract publish-only sink for lifecycle and approval events."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: LifecycleEvent) -> None:
        """Deliver ``event`` to subscribers of ``event.topic``."""
        raise NotImplementedError
