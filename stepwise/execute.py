"""Step dispatch for workflow executions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .conditions import evaluate_condition
from .contracts import (
    ActionStep,
    ApprovalStep,
    ConditionStep,
    DelayStep,
    NotificationStep,
    OnError,
    StepKind,
    WorkflowStep,
)
from .errors import StepExecutionError
from .models import WorkflowExecution
from .registry import HandlerRegistry, HandlerResult

if TYPE_CHECKING:
    from .approvals import ApprovalGateManager

logger = logging.getLogger(__name__)


class StepOutcome(BaseModel):
    """What a successful dispatch asks the coordinator to do next.

    ``suspend`` is set by delay and approval steps; the coordinator then
    stops the loop instead of advancing to ``next_step_id``.
    """

    next_step_id: Optional[str] = None
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    suspend: Optional[Literal["delay", "approval"]] = None
    delay_seconds: float = 0.0


class StepExecutor:
    """Dispatches a step to the behaviour registered for its kind."""

    def __init__(
        self, registry: HandlerRegistry, approvals: "ApprovalGateManager"
    ) -> None:
        self._registry = registry
        self._approvals = approvals
        self._dispatch: Dict[
            str, Callable[[Any, WorkflowExecution], Awaitable[StepOutcome]]
        ] = {
            StepKind.ACTION.value: self._execute_action,
            StepKind.CONDITION.value: self._execute_condition,
            StepKind.DELAY.value: self._execute_delay,
            StepKind.APPROVAL.value: self._execute_approval,
            StepKind.NOTIFICATION.value: self._execute_notification,
        }

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    async def execute(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> StepOutcome:
        """Run ``step`` for ``execution``.

        Raises:
            StepExecutionError: The step failed and may be retried.
        """
        handler = self._dispatch.get(step.kind)
        if handler is None:
            raise StepExecutionError(step.id, f"Unsupported step kind: {step.kind}")
        logger.debug(f"Dispatching {step.kind} step {step.id} for execution {execution.id}")
        return await handler(step, execution)

    async def _invoke(
        self, step: WorkflowStep, name: str, execution: WorkflowExecution
    ) -> HandlerResult:
        config = step.config.as_handler_config()
        try:
            result = await self._registry.invoke(name, config, dict(execution.context))
        except KeyError as exc:
            raise StepExecutionError(
                step.id, f"No handler registered for {name!r}", exc
            ) from exc
        except Exception as exc:
            raise StepExecutionError(
                step.id, f"Handler {name!r} failed: {exc}", exc
            ) from exc
        if not result.success:
            raise StepExecutionError(
                step.id, result.error or f"Handler {name!r} reported failure"
            )
        return result

    async def _execute_action(
        self, step: ActionStep, execution: WorkflowExecution
    ) -> StepOutcome:
        result = await self._invoke(step, step.config.action, execution)
        return StepOutcome(
            next_step_id=step.default_next(),
            context_updates=result.context_updates,
            output=result.output,
        )

    async def _execute_condition(
        self, step: ConditionStep, execution: WorkflowExecution
    ) -> StepOutcome:
        result = evaluate_condition(execution.context, step.config.condition)
        logger.info(
            f"Condition {step.id} evaluated to {result} for execution {execution.id}"
        )
        return StepOutcome(next_step_id=step.branch(result), output={"result": result})

    async def _execute_delay(
        self, step: DelayStep, execution: WorkflowExecution
    ) -> StepOutcome:
        delay = step.config.delay_seconds
        if delay is None or delay < 0:
            raise StepExecutionError(step.id, f"Invalid delay_seconds: {delay!r}")
        return StepOutcome(
            next_step_id=step.default_next(),
            suspend="delay",
            delay_seconds=float(delay),
        )

    async def _execute_approval(
        self, step: ApprovalStep, execution: WorkflowExecution
    ) -> StepOutcome:
        request = await self._approvals.request(
            execution.id, step.id, step.config.approver_id
        )
        return StepOutcome(
            next_step_id=step.default_next(),
            suspend="approval",
            output={"request_id": request.id},
        )

    async def _execute_notification(
        self, step: NotificationStep, execution: WorkflowExecution
    ) -> StepOutcome:
        try:
            result = await self._invoke(step, step.config.handler, execution)
        except StepExecutionError as exc:
            if step.error_handling.on_error == OnError.STOP:
                raise
            logger.warning(
                f"Notification step {step.id} failed for execution {execution.id}: {exc}"
            )
            return StepOutcome(next_step_id=step.default_next(), output={"error": str(exc)})
        return StepOutcome(
            next_step_id=step.default_next(),
            context_updates=result.context_updates,
            output=result.output,
        )
