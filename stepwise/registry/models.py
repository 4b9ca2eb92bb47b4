"""Handler result model."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field


class HandlerResult(BaseModel):
    """Outcome reported by an action or notification handler."""

    success: bool = True
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> "HandlerResult":
        """Normalise what a handler returned.

        ``None`` means success without changes and a plain mapping is taken
        as context updates.
        """
        if value is None:
            return cls()
        if isinstance(value, HandlerResult):
            return value
        if isinstance(value, dict):
            return cls(context_updates=value)
        return cls(output=value)


HandlerReturn = Union[HandlerResult, Dict[str, Any], None]
Handler = Callable[
    [Dict[str, Any], Dict[str, Any]], Union[HandlerReturn, Awaitable[HandlerReturn]]
]
