"""Runtime records: executions, approvals, scheduled continuations."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .contracts import utcnow


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class PauseReason(str, Enum):
    OPERATOR = "operator"
    APPROVAL = "approval"


class WorkflowExecution(BaseModel):
    """One running instance of a definition, bound to a definition version."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    definition_version: int
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_step_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0
    pause_reason: Optional[PauseReason] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance_to(self, step_id: str) -> None:
        """Move the cursor to ``step_id``; the retry budget starts over."""
        self.current_step_id = step_id
        self.retry_count = 0

    def finish(self, status: ExecutionStatus, now: datetime) -> None:
        self.status = status
        self.completed_at = now
        self.pause_reason = None
        if status == ExecutionStatus.COMPLETED:
            self.current_step_id = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    step_id: str
    approver_id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    comments: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status != ApprovalStatus.PENDING


class TaskKind(str, Enum):
    DELAY = "delay"
    RETRY = "retry"


class ScheduledTask(BaseModel):
    """Durable continuation: wake ``execution_id`` on ``step_id`` at ``wake_at``."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    step_id: str
    kind: TaskKind
    wake_at: datetime
    attempt: int = 0
    failures: int = 0


class StepRecord(BaseModel):
    """Record of an individual step dispatch."""

    id: Optional[int] = None
    execution_id: str
    step_id: str
    attempt: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Optional[Dict[str, Any]] = None


class LifecycleEvent(BaseModel):
    """Envelope published to the event sink."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: str
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "LifecycleEvent":
        return cls.model_validate_json(data)
