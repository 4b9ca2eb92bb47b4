"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..analytics import ExecutionStats
from ..contracts import DefinitionStatus, WorkflowDefinition
from ..models import (
    ApprovalRequest,
    ApprovalStatus,
    ExecutionStatus,
    ScheduledTask,
    StepRecord,
    WorkflowExecution,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    ``update_execution`` and ``update_approval`` are compare-and-set: when
    ``expected_status`` is given the write only happens if the stored status
    still equals it, and the return value reports whether it did.
    """

    # -- definitions ---------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Store ``definition`` as the row for its (id, version)."""

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        """Return one version, or the latest when ``version`` is None."""

    async def list_definitions(
        self, status: Optional[DefinitionStatus] = None
    ) -> list[WorkflowDefinition]:
        """Latest version of each definition, newest first."""

    async def delete_definition(self, workflow_id: str) -> bool:
        """Remove every version of a definition."""

    # -- executions ----------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        """Overwrite the stored execution, optionally conditional on status."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        """Executions ordered by start time, most recent first."""

    async def execution_stats(self, workflow_id: Optional[str] = None) -> ExecutionStats:
        """Aggregate counts and durations over persisted executions."""

    # -- step history --------------------------------------------------
    async def mark_step_started(
        self, execution_id: str, step_id: str, attempt: int = 1
    ) -> None:
        """Record start of a step dispatch."""

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        """Record completion of a step dispatch."""

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        """Step history of an execution in dispatch order."""

    # -- approvals -----------------------------------------------------
    async def save_approval(self, request: ApprovalRequest) -> None:
        """Persist a new approval request."""

    async def get_approval(self, request_id: str) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def update_approval(
        self,
        request: ApprovalRequest,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> bool:
        """Overwrite the stored request, optionally conditional on status."""

    async def list_approvals(
        self,
        execution_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
        approver_id: Optional[str] = None,
    ) -> list[ApprovalRequest]:
        """Approval requests ordered by request time."""

    # -- scheduled continuations ---------------------------------------
    async def schedule_task(self, task: ScheduledTask) -> None:
        """Persist a continuation."""

    async def claim_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Atomically remove and return every task due at ``now``."""

    async def delete_tasks(self, execution_id: str) -> int:
        """Drop pending continuations of an execution."""

    async def list_tasks(self, execution_id: Optional[str] = None) -> list[ScheduledTask]:
        """Pending continuations ordered by wake time."""

    async def next_wake_at(self) -> datetime | None:
        """Earliest pending wake time, if any."""
