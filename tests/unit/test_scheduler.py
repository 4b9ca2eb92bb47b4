"""Continuation scheduler tests."""

import asyncio
from datetime import timedelta

import pytest

from stepwise.models import TaskKind
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.scheduler import ContinuationScheduler
from stepwise.utils.locks import KeyedLock


@pytest.mark.asyncio
async def test_run_pending_fires_only_due_tasks(clock):
    repository = InMemoryWorkflowRepository()
    scheduler = ContinuationScheduler(repository, clock=clock)
    fired = []

    async def handler(task):
        fired.append(task.execution_id)

    scheduler.bind(handler)
    await scheduler.schedule("e1", "s", TaskKind.DELAY, 10)
    await scheduler.schedule("e2", "s", TaskKind.RETRY, 20, attempt=1)

    assert await scheduler.run_pending() == 0
    clock.advance(10)
    assert await scheduler.run_pending() == 1
    assert fired == ["e1"]
    assert await repository.next_wake_at() == clock() + timedelta(seconds=10)


@pytest.mark.asyncio
async def test_failed_continuation_is_rescheduled(clock):
    repository = InMemoryWorkflowRepository()
    scheduler = ContinuationScheduler(repository, poll_interval=2, clock=clock)

    async def handler(task):
        raise RuntimeError("database down")

    scheduler.bind(handler)
    task = await scheduler.schedule("e1", "s", TaskKind.DELAY, 0)

    assert await scheduler.run_pending() == 1
    (again,) = await repository.list_tasks("e1")
    assert again.id == task.id
    assert again.wake_at == clock() + timedelta(seconds=2)
    assert again.failures == 1


@pytest.mark.asyncio
async def test_continuation_is_dropped_after_repeated_failures(clock):
    repository = InMemoryWorkflowRepository()
    scheduler = ContinuationScheduler(repository, poll_interval=2, max_failures=3, clock=clock)
    attempts = []

    async def handler(task):
        attempts.append(task.failures)
        raise RuntimeError("database down")

    scheduler.bind(handler)
    await scheduler.schedule("e1", "s", TaskKind.DELAY, 0)

    for _ in range(3):
        assert await scheduler.run_pending() == 1
        clock.advance(2)

    assert attempts == [0, 1, 2]
    assert await repository.list_tasks("e1") == []
    assert await scheduler.run_pending() == 0


@pytest.mark.asyncio
async def test_cancel_removes_tasks(clock):
    repository = InMemoryWorkflowRepository()
    scheduler = ContinuationScheduler(repository, clock=clock)
    await scheduler.schedule("e1", "s", TaskKind.DELAY, 1)
    await scheduler.schedule("e1", "s", TaskKind.RETRY, 1)
    await scheduler.schedule("e2", "s", TaskKind.DELAY, 1)

    assert await scheduler.cancel("e1") == 2
    assert [t.execution_id for t in await repository.list_tasks()] == ["e2"]


@pytest.mark.asyncio
async def test_run_stops_after_lifespan():
    repository = InMemoryWorkflowRepository()
    scheduler = ContinuationScheduler(repository, poll_interval=0.01)
    fired = []

    async def handler(task):
        fired.append(task.id)

    scheduler.bind(handler)
    await scheduler.schedule("e1", "s", TaskKind.DELAY, 0)
    await asyncio.wait_for(scheduler.run(lifespan=0.1), timeout=2)
    assert len(fired) == 1


@pytest.mark.asyncio
async def test_stop_ends_run_loop():
    scheduler = ContinuationScheduler(InMemoryWorkflowRepository(), poll_interval=5)
    runner = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(runner, timeout=2)


@pytest.mark.asyncio
async def test_keyed_lock_serialises_per_key():
    locks = KeyedLock()
    order = []

    async def worker(key, label):
        async with locks.hold(key):
            order.append(f"{label}-in")
            await asyncio.sleep(0.01)
            order.append(f"{label}-out")

    await asyncio.gather(worker("a", "1"), worker("a", "2"))
    assert order == ["1-in", "1-out", "2-in", "2-out"]
    assert len(locks) == 0
    assert not locks.locked("a")
