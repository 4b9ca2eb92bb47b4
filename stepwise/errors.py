"""Exception hierarchy for the workflow engine."""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""


class DefinitionNotFound(WorkflowError):
    def __init__(self, workflow_id: str, version: Optional[int] = None) -> None:
        self.workflow_id = workflow_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Workflow not found: {workflow_id}{suffix}")


class ExecutionNotFound(WorkflowError):
    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Workflow execution not found: {execution_id}")


class ApprovalRequestNotFound(WorkflowError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Approval request not found: {request_id}")


class InactiveWorkflow(WorkflowError):
    def __init__(self, workflow_id: str, status: str) -> None:
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is not active (status={status})")


class InvalidStateTransition(WorkflowError):
    """Raised when an operation is not allowed in the current state."""


class StepExecutionError(WorkflowError):
    """Recoverable failure of a single step dispatch.

    Handled by the retry controller; never propagates past the step loop.
    """

    def __init__(
        self, step_id: str, message: str, cause: Optional[BaseException] = None
    ) -> None:
        self.step_id = step_id
        self.cause = cause
        super().__init__(message)


class MaxRetriesExceeded(WorkflowError):
    """Terminal failure recorded on the execution once retries are exhausted."""

    def __init__(self, step_id: str, attempts: int, last_error: Optional[str]) -> None:
        self.step_id = step_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step {step_id} failed after {attempts} attempt(s): {last_error}"
        )


__all__ = [
    "WorkflowError",
    "DefinitionNotFound",
    "ExecutionNotFound",
    "ApprovalRequestNotFound",
    "InactiveWorkflow",
    "InvalidStateTransition",
    "StepExecutionError",
    "MaxRetriesExceeded",
]
