"""Retry policy tests."""

import pytest

from stepwise.contracts import WorkflowDefinition
from stepwise.errors import StepExecutionError
from stepwise.models import TaskKind, WorkflowExecution
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.retry import RetryAction, RetryController
from stepwise.scheduler import ContinuationScheduler
from stepwise.utils.retry import compute_backoff


def _step(**policy):
    return WorkflowDefinition(
        name="wf",
        steps=[{"id": "s", "kind": "action", "config": {"action": "x"}, "error_handling": policy}],
    ).steps[0]


def _execution():
    return WorkflowExecution(workflow_id="wf", definition_version=1, current_step_id="s")


def test_compute_backoff_growth():
    assert compute_backoff(1, 5) == 5
    assert compute_backoff(3, 5) == 5
    assert compute_backoff(1, 2, multiplier=3) == 2
    assert compute_backoff(3, 2, multiplier=3) == 18
    assert compute_backoff(10, 2, multiplier=3, max_delay=60) == 60
    assert 2 <= compute_backoff(1, 2, jitter=1) <= 3


def test_decide_retries_until_bound():
    controller = RetryController(ContinuationScheduler(InMemoryWorkflowRepository()))
    step = _step(max_retries=2, retry_delay_seconds=4, backoff_multiplier=2)
    execution = _execution()
    error = StepExecutionError("s", "boom")

    first = controller.decide(execution, step, error)
    assert first.action == RetryAction.RETRY
    assert first.delay_seconds == 4
    assert execution.retry_count == 1
    assert execution.error == "boom"

    second = controller.decide(execution, step, error)
    assert second.action == RetryAction.FAIL
    assert execution.retry_count == 2
    assert execution.error == "Step s failed after 2 attempt(s): boom"


@pytest.mark.parametrize(
    "on_error, expected",
    [("stop", RetryAction.FAIL), ("continue", RetryAction.ADVANCE), ("skip", RetryAction.ADVANCE)],
)
def test_decide_respects_on_error(on_error, expected):
    controller = RetryController(ContinuationScheduler(InMemoryWorkflowRepository()))
    step = _step(max_retries=1, on_error=on_error)
    decision = controller.decide(_execution(), step, StepExecutionError("s", "x"))
    assert decision.action == expected


def test_skip_advances_on_first_failure_even_with_budget():
    controller = RetryController(ContinuationScheduler(InMemoryWorkflowRepository()))
    step = _step(max_retries=5, on_error="skip")
    execution = _execution()
    decision = controller.decide(execution, step, StepExecutionError("s", "x"))
    assert decision.action == RetryAction.ADVANCE
    assert execution.error == "x"


@pytest.mark.asyncio
async def test_schedule_retry_records_attempt():
    repository = InMemoryWorkflowRepository()
    controller = RetryController(ContinuationScheduler(repository))
    step = _step(max_retries=3, retry_delay_seconds=1)
    execution = _execution()
    decision = controller.decide(execution, step, StepExecutionError("s", "x"))

    await controller.schedule_retry(execution, step, decision)

    (task,) = await repository.list_tasks(execution.id)
    assert task.kind == TaskKind.RETRY
    assert task.attempt == 1
    assert task.step_id == "s"


def test_decide_caps_growth_and_adds_jitter():
    controller = RetryController(ContinuationScheduler(InMemoryWorkflowRepository()))
    capped = _step(
        max_retries=4, retry_delay_seconds=10, backoff_multiplier=2, max_retry_delay_seconds=15
    )
    execution = _execution()
    error = StepExecutionError("s", "boom")
    assert controller.decide(execution, capped, error).delay_seconds == 10
    assert controller.decide(execution, capped, error).delay_seconds == 15
    assert controller.decide(execution, capped, error).delay_seconds == 15

    jittered = _step(max_retries=2, retry_delay_seconds=10, retry_jitter_seconds=1)
    delay = controller.decide(_execution(), jittered, error).delay_seconds
    assert 10 <= delay <= 11
