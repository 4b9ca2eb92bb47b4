"""Registry of named step handlers supplied by the host application."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Optional

from .models import Handler, HandlerResult, HandlerReturn

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Name -> callable table used by action and notification steps.

    Handlers receive ``(config, context)`` and may be plain functions or
    coroutines. ``context`` is a copy; changes must be returned as context
    updates to be kept.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(
        self, name: str, handler: Optional[Handler] = None, *, replace: bool = False
    ) -> Any:
        """Register ``handler`` under ``name``; usable as a decorator."""

        def _add(func: Handler) -> Handler:
            if name in self._handlers and not replace:
                raise ValueError(f"Handler already registered: {name}")
            self._handlers[name] = func
            logger.debug(f"Registered handler {name}")
            return func

        if handler is not None:
            return _add(handler)
        return _add

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get(self, name: str) -> Optional[Handler]:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def invoke(
        self, name: str, config: Dict[str, Any], context: Dict[str, Any]
    ) -> HandlerResult:
        """Call the handler registered as ``name``.

        Raises:
            KeyError: No handler with that name.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"No handler registered for {name!r}")
        result = handler(config, context)
        if inspect.isawaitable(result):
            result = await result
        return HandlerResult.coerce(result)


# Process-wide default registry. Engines built without an explicit registry
# use this one so handlers can register themselves at import time.
REGISTRY = HandlerRegistry()


def register_handler(name: str, *, replace: bool = False) -> Callable[[Handler], Handler]:
    """Decorator adding a handler to ``REGISTRY``."""
    return REGISTRY.register(name, replace=replace)


__all__ = [
    "Handler",
    "HandlerRegistry",
    "HandlerResult",
    "HandlerReturn",
    "REGISTRY",
    "register_handler",
]
