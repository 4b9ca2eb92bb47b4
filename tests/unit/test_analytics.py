"""Execution statistics tests."""

from datetime import datetime, timedelta, timezone

import pytest

from stepwise.analytics import ExecutionStats, collect_stats, compute_stats
from stepwise.models import ExecutionStatus, WorkflowExecution
from stepwise.persistence import InMemoryWorkflowRepository

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _finished(status, seconds):
    execution = WorkflowExecution(workflow_id="wf", definition_version=1, started_at=T0)
    execution.finish(status, T0 + timedelta(seconds=seconds))
    return execution


def test_empty_stats():
    stats = compute_stats([])
    assert stats == ExecutionStats()
    assert stats.success_rate == 0.0


def test_stats_over_mixed_executions():
    executions = [
        _finished(ExecutionStatus.COMPLETED, 4),
        _finished(ExecutionStatus.COMPLETED, 6),
        _finished(ExecutionStatus.FAILED, 2),
        _finished(ExecutionStatus.CANCELLED, 8),
        WorkflowExecution(workflow_id="wf", definition_version=1, started_at=T0),
    ]
    stats = compute_stats(executions)
    assert stats.total_executions == 5
    assert stats.successful_executions == 2
    assert stats.failed_executions == 1
    assert stats.average_execution_time == pytest.approx(5.0)
    assert stats.success_rate == pytest.approx(40.0)


@pytest.mark.asyncio
async def test_collect_stats_by_workflow():
    repository = InMemoryWorkflowRepository()
    await repository.create_execution(_finished(ExecutionStatus.COMPLETED, 1))
    await repository.create_execution(
        WorkflowExecution(workflow_id="other", definition_version=1)
    )

    assert (await collect_stats(repository, "wf")).success_rate == 100.0
    assert (await collect_stats(repository)).total_executions == 2
