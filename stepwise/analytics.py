"""Read-only aggregates over persisted executions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from pydantic import BaseModel

from .models import ExecutionStatus, WorkflowExecution

if TYPE_CHECKING:
    from .persistence import WorkflowRepository


class ExecutionStats(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time: float = 0.0
    success_rate: float = 0.0

    @classmethod
    def from_counts(
        cls, total: int, successful: int, failed: int, average: Optional[float]
    ) -> "ExecutionStats":
        return cls(
            total_executions=total,
            successful_executions=successful,
            failed_executions=failed,
            average_execution_time=average or 0.0,
            success_rate=(successful / total) * 100 if total else 0.0,
        )


def compute_stats(executions: Iterable[WorkflowExecution]) -> ExecutionStats:
    """Stats for executions already loaded in memory.

    The average duration only covers executions that have finished.
    """
    total = successful = failed = 0
    durations: list[float] = []
    for execution in executions:
        total += 1
        if execution.status == ExecutionStatus.COMPLETED:
            successful += 1
        elif execution.status == ExecutionStatus.FAILED:
            failed += 1
        if execution.duration_seconds is not None:
            durations.append(execution.duration_seconds)
    average = sum(durations) / len(durations) if durations else None
    return ExecutionStats.from_counts(total, successful, failed, average)


async def collect_stats(
    repository: "WorkflowRepository", workflow_id: Optional[str] = None
) -> ExecutionStats:
    """Execution statistics, optionally for a single workflow."""
    return await repository.execution_stats(workflow_id)


__all__ = ["ExecutionStats", "compute_stats", "collect_stats"]
