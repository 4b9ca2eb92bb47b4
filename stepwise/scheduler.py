"""Durable continuation scheduler for delay and retry wake-ups.

Continuations live in the repository's scheduled-task table, so they
survive restarts. ``run`` polls for due tasks and sleeps until the next
wake time, the poll interval, or an explicit wake-up, whichever is first.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .constants import DEFAULT_MAX_CONTINUATION_FAILURES, DEFAULT_POLL_INTERVAL_SECONDS
from .contracts import utcnow
from .models import ScheduledTask, TaskKind
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

TaskHandler = Callable[[ScheduledTask], Awaitable[None]]


class ContinuationScheduler:
    def __init__(
        self,
        repository: WorkflowRepository,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_failures: int = DEFAULT_MAX_CONTINUATION_FAILURES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._poll_interval = poll_interval
        self._max_failures = max_failures
        self._clock = clock
        self._handler: Optional[TaskHandler] = None
        self._wakeup = asyncio.Event()
        self._stopping = False

    def bind(self, handler: TaskHandler) -> None:
        """Set the callable that resumes an execution for a due task."""
        self._handler = handler

    async def schedule(
        self,
        execution_id: str,
        step_id: str,
        kind: TaskKind,
        delay_seconds: float,
        attempt: int = 0,
    ) -> ScheduledTask:
        task = ScheduledTask(
            execution_id=execution_id,
            step_id=step_id,
            kind=kind,
            wake_at=self._clock() + timedelta(seconds=max(delay_seconds, 0)),
            attempt=attempt,
        )
        await self._repository.schedule_task(task)
        self._wakeup.set()
        logger.info(
            f"Scheduled {kind.value} continuation for execution {execution_id} "
            f"at {task.wake_at.isoformat()}"
        )
        return task

    async def cancel(self, execution_id: str) -> int:
        """Drop every pending continuation of an execution."""
        removed = await self._repository.delete_tasks(execution_id)
        if removed:
            logger.info(f"Cancelled {removed} continuation(s) for execution {execution_id}")
        return removed

    async def run_pending(self) -> int:
        """Fire every task that is due now. Returns the number fired."""
        due = await self._repository.claim_due_tasks(self._clock())
        if due:
            await asyncio.gather(*(self._fire(task) for task in due))
        return len(due)

    async def _fire(self, task: ScheduledTask) -> None:
        if self._handler is None:
            raise RuntimeError("ContinuationScheduler has no handler bound")
        try:
            await self._handler(task)
        except Exception:
            task.failures += 1
            if task.failures >= self._max_failures:
                logger.exception(
                    f"Continuation {task.id} for execution {task.execution_id} failed "
                    f"{task.failures} time(s); dropping it"
                )
                return
            logger.exception(
                f"Continuation {task.id} for execution {task.execution_id} failed; rescheduling"
            )
            task.wake_at = self._clock() + timedelta(seconds=self._poll_interval)
            await self._repository.schedule_task(task)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll for due continuations until stopped or ``lifespan`` elapses.

        Args:
            lifespan: Maximum time in seconds to keep running. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        self._stopping = False

        while not self._stopping:
            if deadline is not None and loop.time() >= deadline:
                break
            self._wakeup.clear()
            await self.run_pending()

            timeout = self._poll_interval
            next_wake = await self._repository.next_wake_at()
            if next_wake is not None:
                until_next = (next_wake - self._clock()).total_seconds()
                timeout = min(timeout, max(until_next, 0))
            if deadline is not None:
                timeout = min(timeout, max(deadline - loop.time(), 0))
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopping = True
        self._wakeup.set()
