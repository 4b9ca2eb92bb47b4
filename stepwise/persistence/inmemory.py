"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Tuple

from ..analytics import ExecutionStats, compute_stats
from ..contracts import DefinitionStatus, WorkflowDefinition, utcnow
from ..models import (
    ApprovalRequest,
    ApprovalStatus,
    ExecutionStatus,
    ScheduledTask,
    StepRecord,
    WorkflowExecution,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._tasks: Dict[str, ScheduledTask] = {}
        self._steps: list[StepRecord] = []
        self._step_id = 0

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        key = (definition.id, definition.version)
        self._definitions[key] = definition.model_copy(deep=True)

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            versions = [v for (wid, v) in self._definitions if wid == workflow_id]
            if not versions:
                return None
            version = max(versions)
        found = self._definitions.get((workflow_id, version))
        return found.model_copy(deep=True) if found else None

    async def list_definitions(
        self, status: Optional[DefinitionStatus] = None
    ) -> list[WorkflowDefinition]:
        latest: Dict[str, WorkflowDefinition] = {}
        for (wid, version), definition in self._definitions.items():
            if wid not in latest or latest[wid].version < version:
                latest[wid] = definition
        result = [
            d.model_copy(deep=True)
            for d in latest.values()
            if status is None or d.status == status
        ]
        result.sort(key=lambda d: d.created_at, reverse=True)
        return result

    async def delete_definition(self, workflow_id: str) -> bool:
        keys = [key for key in self._definitions if key[0] == workflow_id]
        for key in keys:
            del self._definitions[key]
        return bool(keys)

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        if execution.id in self._executions:
            raise ValueError(f"Execution already exists: {execution.id}")
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        found = self._executions.get(execution_id)
        return found.model_copy(deep=True) if found else None

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        stored = self._executions.get(execution.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._executions[execution.id] = execution.model_copy(deep=True)
        return True

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        result = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]
        result.sort(key=lambda e: e.started_at, reverse=True)
        return result

    async def execution_stats(self, workflow_id: Optional[str] = None) -> ExecutionStats:
        return compute_stats(
            e
            for e in self._executions.values()
            if workflow_id is None or e.workflow_id == workflow_id
        )

    # ------------------------------------------------------------------
    async def mark_step_started(
        self, execution_id: str, step_id: str, attempt: int = 1
    ) -> None:
        # ignore duplicate starts for the same attempt
        for step in self._steps:
            if (
                step.execution_id == execution_id
                and step.step_id == step_id
                and step.attempt == attempt
            ):
                return
        self._step_id += 1
        self._steps.append(
            StepRecord(
                id=self._step_id,
                execution_id=execution_id,
                step_id=step_id,
                attempt=attempt,
                started_at=utcnow(),
            )
        )

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        for step in self._steps:
            if (
                step.execution_id == execution_id
                and step.step_id == step_id
                and step.attempt == attempt
                and step.completed_at is None
            ):
                step.completed_at = utcnow()
                step.status = status
                step.output = output or {}
                break

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        return [
            s.model_copy(deep=True) for s in self._steps if s.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    async def save_approval(self, request: ApprovalRequest) -> None:
        self._approvals[request.id] = request.model_copy(deep=True)

    async def get_approval(self, request_id: str) -> ApprovalRequest | None:
        found = self._approvals.get(request_id)
        return found.model_copy(deep=True) if found else None

    async def update_approval(
        self,
        request: ApprovalRequest,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> bool:
        stored = self._approvals.get(request.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._approvals[request.id] = request.model_copy(deep=True)
        return True

    async def list_approvals(
        self,
        execution_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
        approver_id: Optional[str] = None,
    ) -> list[ApprovalRequest]:
        result = [
            r.model_copy(deep=True)
            for r in self._approvals.values()
            if (execution_id is None or r.execution_id == execution_id)
            and (status is None or r.status == status)
            and (approver_id is None or r.approver_id == approver_id)
        ]
        result.sort(key=lambda r: r.requested_at)
        return result

    # ------------------------------------------------------------------
    async def schedule_task(self, task: ScheduledTask) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def claim_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        due = sorted(
            (t for t in self._tasks.values() if t.wake_at <= now),
            key=lambda t: t.wake_at,
        )
        for task in due:
            del self._tasks[task.id]
        return due

    async def delete_tasks(self, execution_id: str) -> int:
        ids = [tid for tid, t in self._tasks.items() if t.execution_id == execution_id]
        for tid in ids:
            del self._tasks[tid]
        return len(ids)

    async def list_tasks(self, execution_id: Optional[str] = None) -> list[ScheduledTask]:
        result = [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if execution_id is None or t.execution_id == execution_id
        ]
        result.sort(key=lambda t: t.wake_at)
        return result

    async def next_wake_at(self) -> datetime | None:
        if not self._tasks:
            return None
        return min(t.wake_at for t in self._tasks.values())
