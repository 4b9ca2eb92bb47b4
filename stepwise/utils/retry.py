from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    delay: float,
    multiplier: float = 1.0,
    jitter: float = 0.0,
    max_delay: Optional[float] = None,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    With the default multiplier of 1.0 every retry waits ``delay`` seconds.
    """
    backoff = delay * multiplier ** max(attempt - 1, 0)
    if max_delay is not None:
        backoff = min(backoff, max_delay)
    if jitter:
        backoff += random.uniform(0, jitter)
    return backoff
