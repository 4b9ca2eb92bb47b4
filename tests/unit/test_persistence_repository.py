"""Repository backend tests (in-memory and SQLite)."""

from datetime import datetime, timedelta, timezone

import pytest

from stepwise.contracts import DefinitionStatus, WorkflowDefinition
from stepwise.models import (
    ApprovalRequest,
    ApprovalStatus,
    ExecutionStatus,
    ScheduledTask,
    TaskKind,
    WorkflowExecution,
)
from stepwise.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        repository = SQLiteWorkflowRepository(tmp_path / "wf.db")
        yield repository
        repository.close()
    else:
        yield InMemoryWorkflowRepository()


def _definition(**kwargs):
    return WorkflowDefinition(
        name=kwargs.pop("name", "wf"),
        steps=[{"id": "a", "kind": "action", "config": {"action": "x"}}],
        **kwargs,
    )


def _execution(workflow_id="wf", started=T0, **kwargs):
    return WorkflowExecution(
        workflow_id=workflow_id, definition_version=1, started_at=started, **kwargs
    )


@pytest.mark.asyncio
async def test_definitions_are_versioned(repo):
    v1 = _definition(created_at=T0)
    v2 = v1.model_copy(update={"version": 2, "status": DefinitionStatus.ACTIVE})
    other = _definition(name="other", created_at=T0 + timedelta(hours=1))
    for definition in (v1, v2, other):
        await repo.save_definition(definition)

    assert (await repo.get_definition(v1.id)).version == 2
    assert (await repo.get_definition(v1.id, 1)).status == DefinitionStatus.DRAFT
    assert await repo.get_definition(v1.id, 3) is None

    listed = await repo.list_definitions()
    assert [d.name for d in listed] == ["other", "wf"]
    assert listed[1].version == 2
    active = await repo.list_definitions(DefinitionStatus.ACTIVE)
    assert [d.id for d in active] == [v1.id]

    assert await repo.delete_definition(v1.id) is True
    assert await repo.get_definition(v1.id, 1) is None
    assert await repo.delete_definition(v1.id) is False


@pytest.mark.asyncio
async def test_execution_round_trip_and_filters(repo):
    first = _execution(context={"nested": {"n": [1, 2]}}, current_step_id="a")
    second = _execution(workflow_id="other", started=T0 + timedelta(minutes=1))
    await repo.create_execution(first)
    await repo.create_execution(second)

    loaded = await repo.get_execution(first.id)
    assert loaded == first
    assert await repo.get_execution("missing") is None

    listed = await repo.list_executions()
    assert [e.id for e in listed] == [second.id, first.id]
    assert [e.id for e in await repo.list_executions(workflow_id="wf")] == [first.id]
    assert await repo.list_executions(status=ExecutionStatus.PAUSED) == []


@pytest.mark.asyncio
async def test_update_execution_compare_and_set(repo):
    execution = _execution()
    await repo.create_execution(execution)

    execution.status = ExecutionStatus.PAUSED
    assert await repo.update_execution(execution, expected_status=ExecutionStatus.RUNNING)

    execution.status = ExecutionStatus.CANCELLED
    assert not await repo.update_execution(execution, expected_status=ExecutionStatus.RUNNING)
    assert (await repo.get_execution(execution.id)).status == ExecutionStatus.PAUSED

    assert await repo.update_execution(execution)
    assert (await repo.get_execution(execution.id)).status == ExecutionStatus.CANCELLED
    assert not await repo.update_execution(_execution())


@pytest.mark.asyncio
async def test_execution_stats(repo):
    done = _execution()
    done.finish(ExecutionStatus.COMPLETED, T0 + timedelta(seconds=10))
    failed = _execution()
    failed.finish(ExecutionStatus.FAILED, T0 + timedelta(seconds=30))
    running = _execution()
    elsewhere = _execution(workflow_id="other")
    for execution in (done, failed, running, elsewhere):
        await repo.create_execution(execution)

    stats = await repo.execution_stats("wf")
    assert stats.total_executions == 3
    assert stats.successful_executions == 1
    assert stats.failed_executions == 1
    assert stats.average_execution_time == pytest.approx(20.0)
    assert stats.success_rate == pytest.approx(100 / 3)

    assert (await repo.execution_stats("nothing")).success_rate == 0.0


@pytest.mark.asyncio
async def test_step_history_is_idempotent_per_attempt(repo):
    await repo.mark_step_started("e1", "a")
    await repo.mark_step_started("e1", "a")
    await repo.mark_step_completed("e1", "a", status="failed", output={"error": "x"})
    await repo.mark_step_completed("e1", "a", status="completed")
    await repo.mark_step_started("e1", "a", attempt=2)
    await repo.mark_step_completed("e1", "a", status="completed", output={"r": 1}, attempt=2)

    records = await repo.list_step_records("e1")
    assert [(r.attempt, r.status) for r in records] == [(1, "failed"), (2, "completed")]
    assert records[0].output == {"error": "x"}
    assert records[1].output == {"r": 1}
    assert records[1].started_at is not None
    assert await repo.list_step_records("e2") == []


@pytest.mark.asyncio
async def test_approvals_compare_and_set(repo):
    request = ApprovalRequest(
        execution_id="e1", step_id="ok", approver_id="boss", requested_at=T0
    )
    other = ApprovalRequest(
        execution_id="e2", step_id="ok", approver_id="cfo", requested_at=T0
    )
    await repo.save_approval(request)
    await repo.save_approval(other)

    assert await repo.get_approval(request.id) == request
    assert [r.id for r in await repo.list_approvals(approver_id="boss")] == [request.id]

    request.status = ApprovalStatus.APPROVED
    assert await repo.update_approval(request, expected_status=ApprovalStatus.PENDING)
    request.status = ApprovalStatus.REJECTED
    assert not await repo.update_approval(request, expected_status=ApprovalStatus.PENDING)

    pending = await repo.list_approvals(status=ApprovalStatus.PENDING)
    assert [r.id for r in pending] == [other.id]
    assert [r.id for r in await repo.list_approvals(execution_id="e1")] == [request.id]


@pytest.mark.asyncio
async def test_scheduled_tasks_are_claimed_once(repo):
    early = ScheduledTask(execution_id="e1", step_id="a", kind=TaskKind.DELAY, wake_at=T0)
    late = ScheduledTask(
        execution_id="e2",
        step_id="a",
        kind=TaskKind.RETRY,
        wake_at=T0 + timedelta(minutes=5),
        attempt=2,
    )
    await repo.schedule_task(late)
    await repo.schedule_task(early)

    assert await repo.next_wake_at() == T0
    assert [t.id for t in await repo.list_tasks()] == [early.id, late.id]

    claimed = await repo.claim_due_tasks(T0 + timedelta(minutes=1))
    assert [t.id for t in claimed] == [early.id]
    assert await repo.claim_due_tasks(T0 + timedelta(minutes=1)) == []
    assert await repo.next_wake_at() == late.wake_at

    assert await repo.delete_tasks("e2") == 1
    assert await repo.list_tasks() == []
    assert await repo.next_wake_at() is None


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    execution = _execution(current_step_id="a")
    await repo.create_execution(execution)
    repo.close()

    reopened = SQLiteWorkflowRepository(path)
    assert await reopened.get_execution(execution.id) == execution
    reopened.close()
