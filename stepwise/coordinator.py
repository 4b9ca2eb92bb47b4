"""Execution coordinator: owns the step loop and status transitions."""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from .approvals import ApprovalGateManager
from .constants import DEFAULT_DEFINITION_CACHE_SIZE
from .contracts import WorkflowDefinition, WorkflowStep, utcnow
from .errors import (
    DefinitionNotFound,
    ExecutionNotFound,
    InactiveWorkflow,
    InvalidStateTransition,
    StepExecutionError,
)
from .events import BaseEventSink, InMemoryEventSink
from .execute import StepExecutor
from .models import (
    ApprovalStatus,
    ExecutionStatus,
    LifecycleEvent,
    PauseReason,
    ScheduledTask,
    StepRecord,
    TaskKind,
    WorkflowExecution,
)
from .persistence import WorkflowRepository
from .registry import REGISTRY, HandlerRegistry
from .retry import RetryAction, RetryController
from .scheduler import ContinuationScheduler
from .utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class ExecutionCoordinator:
    """Drives executions through their bound definition.

    Every iteration of the step loop runs under a per-execution lock and
    persists its result with a compare-and-set on ``running``. The lock is
    released between iterations so pause, resume and continuations of the
    same execution interleave at step boundaries. ``cancel`` does not wait
    for the lock: it flips the status directly and the loop notices when
    its next write loses the compare-and-set.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: Optional[HandlerRegistry] = None,
        events: Optional[BaseEventSink] = None,
        approvals: Optional[ApprovalGateManager] = None,
        scheduler: Optional[ContinuationScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
        definition_cache_size: int = DEFAULT_DEFINITION_CACHE_SIZE,
    ) -> None:
        self._repository = repository
        self._events = events or InMemoryEventSink()
        self._clock = clock
        self._approvals = approvals or ApprovalGateManager(
            repository, self._events, clock=clock
        )
        self._approvals.attach(self)
        self._scheduler = scheduler or ContinuationScheduler(repository, clock=clock)
        self._scheduler.bind(self.continue_execution)
        self._executor = StepExecutor(registry or REGISTRY, self._approvals)
        self._retry = RetryController(self._scheduler)
        self._locks = KeyedLock()
        self._definitions: OrderedDict[Tuple[str, int], WorkflowDefinition] = OrderedDict()
        self._definition_cache_size = definition_cache_size

    @property
    def approvals(self) -> ApprovalGateManager:
        return self._approvals

    @property
    def scheduler(self) -> ContinuationScheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # Public operations
    async def start(
        self,
        definition: WorkflowDefinition,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Create an execution at the first step and run it until it halts.

        Raises:
            InactiveWorkflow: The definition is not active.
        """
        if not definition.is_active:
            raise InactiveWorkflow(definition.id, definition.status.value)

        stored = await self._repository.get_definition(definition.id, definition.version)
        if stored is None:
            await self._repository.save_definition(definition)
        self._cache_definition(definition)

        first = definition.first_step()
        execution = WorkflowExecution(
            workflow_id=definition.id,
            definition_version=definition.version,
            current_step_id=first.id if first else None,
            context=dict(initial_context or {}),
            started_at=self._clock(),
        )
        await self._repository.create_execution(execution)
        logger.info(f"Started workflow execution: {execution.id}")
        await self._publish("started", execution)
        return await self._run(execution.id)

    async def start_by_id(
        self, workflow_id: str, initial_context: Optional[Dict[str, Any]] = None
    ) -> WorkflowExecution:
        definition = await self._repository.get_definition(workflow_id)
        if definition is None:
            raise DefinitionNotFound(workflow_id)
        return await self.start(definition, initial_context)

    async def pause(self, execution_id: str) -> WorkflowExecution:
        """Operator pause. Resuming later re-dispatches the current step.

        Raises:
            ExecutionNotFound: Unknown execution id.
            InvalidStateTransition: The execution is not running.
        """
        async with self._locks.hold(execution_id):
            execution = await self.get_execution(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                raise InvalidStateTransition(
                    f"Cannot pause execution {execution_id} in status {execution.status.value}"
                )
            execution.status = ExecutionStatus.PAUSED
            execution.pause_reason = PauseReason.OPERATOR
            if not await self._commit(execution):
                current = await self.get_execution(execution_id)
                raise InvalidStateTransition(
                    f"Cannot pause execution {execution_id} in status {current.status.value}"
                )
            await self._scheduler.cancel(execution_id)
        logger.info(f"Paused workflow execution: {execution_id}")
        await self._publish("paused", execution, reason=PauseReason.OPERATOR.value)
        return execution

    async def resume(self, execution_id: str) -> WorkflowExecution:
        """Resume a paused execution and run it until it halts.

        After an operator pause the current step is dispatched again. After
        an approval pause the execution moves past the approval step, which
        requires the request for that step to be approved.

        Raises:
            ExecutionNotFound: Unknown execution id.
            InvalidStateTransition: Not paused, or still awaiting approval.
        """
        async with self._locks.hold(execution_id):
            execution = await self.get_execution(execution_id)
            if execution.status != ExecutionStatus.PAUSED:
                raise InvalidStateTransition(
                    f"Cannot resume execution {execution_id} in status {execution.status.value}"
                )
            reason = execution.pause_reason
            next_step_id: Optional[str] = None
            if reason == PauseReason.APPROVAL:
                request = await self._approvals.latest_for_step(
                    execution_id, execution.current_step_id
                )
                if request is None or request.status != ApprovalStatus.APPROVED:
                    raise InvalidStateTransition(
                        f"Execution {execution_id} is awaiting approval of step "
                        f"{execution.current_step_id}"
                    )
                definition = await self._bound_definition(execution)
                step = definition.get_step(execution.current_step_id)
                next_step_id = step.default_next() if step else None

            execution.status = ExecutionStatus.RUNNING
            execution.pause_reason = None
            if not await self._commit(execution, expected=ExecutionStatus.PAUSED):
                current = await self.get_execution(execution_id)
                raise InvalidStateTransition(
                    f"Cannot resume execution {execution_id} in status {current.status.value}"
                )
            logger.info(f"Resumed workflow execution: {execution_id}")
            await self._publish("resumed", execution, reason=reason.value if reason else None)
            if reason == PauseReason.APPROVAL:
                await self._advance(execution, next_step_id)
        return await self._run(execution_id)

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """Cancel an execution; a no-op for executions that already ended.

        Raises:
            ExecutionNotFound: Unknown execution id.
        """
        while True:
            execution = await self.get_execution(execution_id)
            if execution.is_terminal:
                logger.debug(
                    f"Cancel ignored for execution {execution_id} ({execution.status.value})"
                )
                return execution
            previous = execution.status
            execution.finish(ExecutionStatus.CANCELLED, self._clock())
            if await self._repository.update_execution(execution, expected_status=previous):
                break

        await self._scheduler.cancel(execution_id)
        await self._approvals.reject_pending(execution_id, "execution cancelled")
        logger.info(f"Cancelled workflow execution: {execution_id}")
        await self._publish("cancelled", execution)
        return execution

    async def continue_execution(self, task: ScheduledTask) -> None:
        """Scheduler entry point for delay and retry wake-ups.

        Stale tasks (execution no longer running, moved to another step, or
        a newer retry superseding this one) are dropped silently.
        """
        async with self._locks.hold(task.execution_id):
            execution = await self._repository.get_execution(task.execution_id)
            if execution is None:
                logger.warning(f"Continuation {task.id} for unknown execution {task.execution_id}")
                return
            if (
                execution.status != ExecutionStatus.RUNNING
                or execution.current_step_id != task.step_id
                or (task.kind == TaskKind.RETRY and execution.retry_count != task.attempt)
            ):
                logger.info(f"Dropping stale {task.kind.value} continuation {task.id}")
                return
            if task.kind == TaskKind.DELAY:
                definition = await self._bound_definition(execution)
                step = definition.get_step(task.step_id)
                if not await self._advance(execution, step.default_next() if step else None):
                    return
        await self._run(task.execution_id)

    async def recover(self) -> list[WorkflowExecution]:
        """Re-enter the loop for running executions with nothing scheduled.

        The current step of each is dispatched again.
        """
        waiting = {t.execution_id for t in await self._repository.list_tasks()}
        recovered = []
        for execution in await self._repository.list_executions(
            status=ExecutionStatus.RUNNING
        ):
            if execution.id in waiting:
                continue
            logger.info(f"Recovering workflow execution: {execution.id}")
            recovered.append(await self._run(execution.id))
        return recovered

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        return await self._repository.list_executions(workflow_id, status)

    async def step_history(self, execution_id: str) -> list[StepRecord]:
        await self.get_execution(execution_id)
        return await self._repository.list_step_records(execution_id)

    # ------------------------------------------------------------------
    # Step loop
    async def _run(self, execution_id: str) -> WorkflowExecution:
        while True:
            async with self._locks.hold(execution_id):
                execution = await self.get_execution(execution_id)
                if execution.status != ExecutionStatus.RUNNING:
                    return execution
                definition = await self._bound_definition(execution)
                proceed = await self._step(execution, definition)
            if not proceed:
                return await self.get_execution(execution_id)

    async def _step(
        self, execution: WorkflowExecution, definition: WorkflowDefinition
    ) -> bool:
        """Dispatch the current step once. Returns whether to loop again."""
        step = definition.get_step(execution.current_step_id)
        if step is None:
            await self._complete(execution)
            return False

        attempt = execution.retry_count + 1
        await self._repository.mark_step_started(execution.id, step.id, attempt)
        try:
            outcome = await self._executor.execute(step, execution)
        except StepExecutionError as exc:
            await self._repository.mark_step_completed(
                execution.id, step.id, "failed", {"error": str(exc)}, attempt
            )
            return await self._handle_failure(execution, step, exc)
        await self._repository.mark_step_completed(
            execution.id, step.id, "completed", {"result": outcome.output}, attempt
        )

        execution.context.update(outcome.context_updates)
        if outcome.suspend == "delay":
            if await self._commit(execution):
                await self._scheduler.schedule(
                    execution.id, step.id, TaskKind.DELAY, outcome.delay_seconds
                )
            return False
        if outcome.suspend == "approval":
            execution.status = ExecutionStatus.PAUSED
            execution.pause_reason = PauseReason.APPROVAL
            if not await self._commit(execution):
                await self._approvals.reject_pending(execution.id, "execution cancelled")
                return False
            logger.info(f"Execution {execution.id} awaiting approval of step {step.id}")
            await self._publish("paused", execution, reason=PauseReason.APPROVAL.value)
            return False
        return await self._advance(execution, outcome.next_step_id)

    async def _handle_failure(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        error: StepExecutionError,
    ) -> bool:
        decision = self._retry.decide(execution, step, error)
        if decision.action == RetryAction.RETRY:
            if await self._commit(execution):
                await self._retry.schedule_retry(execution, step, decision)
            return False
        if decision.action == RetryAction.ADVANCE:
            return await self._advance(execution, step.default_next())
        execution.finish(ExecutionStatus.FAILED, self._clock())
        if await self._commit(execution):
            await self._publish("failed", execution, error=execution.error)
        return False

    async def _advance(
        self, execution: WorkflowExecution, next_step_id: Optional[str]
    ) -> bool:
        if next_step_id is None:
            execution.retry_count = 0
            await self._complete(execution)
            return False
        execution.advance_to(next_step_id)
        return await self._commit(execution)

    async def _complete(self, execution: WorkflowExecution) -> None:
        execution.finish(ExecutionStatus.COMPLETED, self._clock())
        if await self._commit(execution):
            logger.info(f"Workflow execution completed: {execution.id}")
            await self._publish("completed", execution)

    async def _commit(
        self,
        execution: WorkflowExecution,
        expected: ExecutionStatus = ExecutionStatus.RUNNING,
    ) -> bool:
        if await self._repository.update_execution(execution, expected_status=expected):
            return True
        logger.info(
            f"Execution {execution.id} changed concurrently; discarding transition "
            f"to {execution.status.value}"
        )
        return False

    async def _bound_definition(self, execution: WorkflowExecution) -> WorkflowDefinition:
        key = (execution.workflow_id, execution.definition_version)
        definition = self._definitions.get(key)
        if definition is not None:
            self._definitions.move_to_end(key)
            return definition
        definition = await self._repository.get_definition(*key)
        if definition is None:
            raise DefinitionNotFound(*key)
        self._cache_definition(definition)
        return definition

    def _cache_definition(self, definition: WorkflowDefinition) -> None:
        """Remember a definition version, evicting the least recently used."""
        key = (definition.id, definition.version)
        self._definitions[key] = definition
        self._definitions.move_to_end(key)
        while len(self._definitions) > self._definition_cache_size:
            self._definitions.popitem(last=False)

    async def _publish(self, name: str, execution: WorkflowExecution, **data: Any) -> None:
        event = LifecycleEvent(
            topic=f"execution.{name}",
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            timestamp=self._clock(),
            data={
                "status": execution.status.value,
                "current_step_id": execution.current_step_id,
                **data,
            },
        )
        try:
            await self._events.publish(event)
        except Exception:
            logger.exception(f"Failed to publish {event.topic} for execution {execution.id}")
