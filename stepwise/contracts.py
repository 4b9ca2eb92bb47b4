"""Workflow definition contracts.

A definition is a named, versioned graph of steps. Step configuration is a
tagged variant per step kind; every config model accepts extra keys so the
host application can pass arbitrary settings through to its handlers.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_NOTIFICATION_HANDLER,
    DEFAULT_RETRY_DELAY_SECONDS,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerKind(str, Enum):
    EVENT = "event"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class StepKind(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"
    APPROVAL = "approval"
    NOTIFICATION = "notification"


class OnError(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"
    SKIP = "skip"


class WorkflowTrigger(BaseModel):
    """What starts a workflow. ``parameters`` is trigger-specific."""

    kind: TriggerKind = TriggerKind.MANUAL
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ErrorHandling(BaseModel):
    """Per-step failure policy."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_delay_seconds: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)
    backoff_multiplier: float = Field(default=1.0, ge=1.0)
    max_retry_delay_seconds: Optional[float] = Field(default=None, ge=0)
    retry_jitter_seconds: float = Field(default=0.0, ge=0)
    on_error: OnError = OnError.STOP


ConditionOperator = Literal[
    "equals", "not_equals", "greater_than", "less_than", "contains"
]


class Condition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None


# ---------------------------------------------------------------------------
# Step configuration variants


class StepConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    def as_handler_config(self) -> Dict[str, Any]:
        """Plain dict handed to registered handlers."""
        return self.model_dump(mode="json")


class ActionConfig(StepConfig):
    action: str


class ConditionConfig(StepConfig):
    condition: Condition


class DelayConfig(StepConfig):
    delay_seconds: float = Field(default=0, ge=0)


class ApprovalConfig(StepConfig):
    approver_id: str
    message: Optional[str] = None


class NotificationConfig(StepConfig):
    handler: str = DEFAULT_NOTIFICATION_HANDLER
    message: str = ""
    recipients: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Steps


class BaseStep(BaseModel):
    id: str
    name: str = ""
    next_steps: List[str] = Field(default_factory=list)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)

    @model_validator(mode="after")
    def _check_next_steps(self) -> "BaseStep":
        if len(self.next_steps) > 1:
            raise ValueError(
                f"Step {self.id!r} ({self.kind}) accepts at most one next step"
            )
        return self

    def default_next(self) -> Optional[str]:
        return self.next_steps[0] if self.next_steps else None


class ActionStep(BaseStep):
    kind: Literal["action"] = "action"
    config: ActionConfig


class ConditionStep(BaseStep):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig

    @model_validator(mode="after")
    def _check_next_steps(self) -> "ConditionStep":
        if not 1 <= len(self.next_steps) <= 2:
            raise ValueError(
                f"Condition step {self.id!r} needs a true and a false branch"
            )
        return self

    def branch(self, result: bool) -> str:
        """Next step id for an evaluated condition.

        With a single declared next step both branches lead to it.
        """
        if result or len(self.next_steps) < 2:
            return self.next_steps[0]
        return self.next_steps[1]


class DelayStep(BaseStep):
    kind: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig)


class ApprovalStep(BaseStep):
    kind: Literal["approval"] = "approval"
    config: ApprovalConfig


class NotificationStep(BaseStep):
    kind: Literal["notification"] = "notification"
    config: NotificationConfig = Field(default_factory=NotificationConfig)


WorkflowStep = Annotated[
    Union[ActionStep, ConditionStep, DelayStep, ApprovalStep, NotificationStep],
    Field(discriminator="kind"),
]


class WorkflowDefinition(BaseModel):
    """A named, versioned graph of steps with a trigger."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    steps: List[WorkflowStep] = Field(default_factory=list)
    status: DefinitionStatus = DefinitionStatus.DRAFT
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_graph(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id {step.id!r}")
            seen.add(step.id)
        for step in self.steps:
            missing = [ref for ref in step.next_steps if ref not in seen]
            if missing:
                raise ValueError(
                    f"Step {step.id!r} references unknown step(s): {', '.join(missing)}"
                )
        return self

    @property
    def is_active(self) -> bool:
        return self.status == DefinitionStatus.ACTIVE

    def first_step(self) -> Optional[WorkflowStep]:
        return self.steps[0] if self.steps else None

    def get_step(self, step_id: Optional[str]) -> Optional[WorkflowStep]:
        if step_id is None:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.model_validate_json(data)


__all__ = [
    "TriggerKind",
    "DefinitionStatus",
    "StepKind",
    "OnError",
    "WorkflowTrigger",
    "ErrorHandling",
    "Condition",
    "StepConfig",
    "ActionConfig",
    "ConditionConfig",
    "DelayConfig",
    "ApprovalConfig",
    "NotificationConfig",
    "ActionStep",
    "ConditionStep",
    "DelayStep",
    "ApprovalStep",
    "NotificationStep",
    "WorkflowStep",
    "WorkflowDefinition",
    "utcnow",
]
