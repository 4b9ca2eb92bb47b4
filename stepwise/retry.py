"""Failure accounting and bounded retry scheduling."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from .contracts import OnError, WorkflowStep
from .errors import MaxRetriesExceeded, StepExecutionError
from .models import TaskKind, WorkflowExecution
from .scheduler import ContinuationScheduler
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class RetryAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"
    ADVANCE = "advance"


class RetryDecision(BaseModel):
    action: RetryAction
    delay_seconds: float = 0.0


class RetryController:
    """Decides what happens after a step raised ``StepExecutionError``.

    ``retry_count`` counts failed dispatches of the current step. A retry is
    scheduled while it stays below ``max_retries``; reaching the bound ends
    the step according to its ``on_error`` policy.
    """

    def __init__(self, scheduler: ContinuationScheduler) -> None:
        self._scheduler = scheduler

    def decide(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        error: StepExecutionError,
    ) -> RetryDecision:
        policy = step.error_handling
        execution.retry_count += 1
        execution.error = str(error)

        if policy.on_error == OnError.SKIP:
            logger.warning(
                f"Skipping failed step {step.id} for execution {execution.id}: {error}"
            )
            return RetryDecision(action=RetryAction.ADVANCE)

        if execution.retry_count < policy.max_retries:
            delay = compute_backoff(
                execution.retry_count,
                policy.retry_delay_seconds,
                multiplier=policy.backoff_multiplier,
                jitter=policy.retry_jitter_seconds,
                max_delay=policy.max_retry_delay_seconds,
            )
            logger.info(
                f"Retrying step {step.id} for execution {execution.id} in {delay:.1f}s "
                f"(attempt {execution.retry_count + 1} of {policy.max_retries})"
            )
            return RetryDecision(action=RetryAction.RETRY, delay_seconds=delay)

        exhausted = MaxRetriesExceeded(step.id, execution.retry_count, str(error))
        execution.error = str(exhausted)
        if policy.on_error == OnError.CONTINUE:
            logger.warning(f"{exhausted}; continuing execution {execution.id}")
            return RetryDecision(action=RetryAction.ADVANCE)

        logger.error(f"Execution {execution.id} failed: {exhausted}")
        return RetryDecision(action=RetryAction.FAIL)

    async def schedule_retry(
        self, execution: WorkflowExecution, step: WorkflowStep, decision: RetryDecision
    ) -> None:
        await self._scheduler.schedule(
            execution.id,
            step.id,
            TaskKind.RETRY,
            decision.delay_seconds,
            attempt=execution.retry_count,
        )
