"""Shared fixtures for engine tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

import pytest

from stepwise.contracts import DefinitionStatus, WorkflowDefinition
from stepwise.coordinator import ExecutionCoordinator
from stepwise.events import InMemoryEventSink
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.registry import HandlerRegistry


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CallLog:
    """Handler that records every call and returns canned updates."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def handler(self, name: str, updates: Dict[str, Any] | None = None) -> Callable:
        def _handle(config: Dict[str, Any], context: Dict[str, Any]):
            self.calls.append({"name": name, "config": config, "context": dict(context)})
            return dict(updates or {})

        return _handle

    @property
    def names(self) -> List[str]:
        return [c["name"] for c in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def coordinator(repository, registry, events, clock) -> ExecutionCoordinator:
    return ExecutionCoordinator(repository, registry=registry, events=events, clock=clock)


@pytest.fixture
def build_definition() -> Callable[..., WorkflowDefinition]:
    def _build(*steps: Dict[str, Any], status=DefinitionStatus.ACTIVE, **kwargs):
        return WorkflowDefinition(
            name=kwargs.pop("name", "test-workflow"),
            steps=list(steps),
            status=status,
            **kwargs,
        )

    return _build


def action(step_id: str, handler: str | None = None, next_step: str | None = None, **extra):
    """Plain-dict action step."""
    step: Dict[str, Any] = {
        "id": step_id,
        "kind": "action",
        "config": {"action": handler or step_id},
        "next_steps": [next_step] if next_step else [],
    }
    step.update(extra)
    return step
