"""Wiring of the engine components from configuration."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .analytics import ExecutionStats, collect_stats
from .approvals import ApprovalGateManager
from .config import StepwiseConfig, load_config
from .contracts import utcnow
from .coordinator import ExecutionCoordinator
from .definitions import WorkflowDefinitionService
from .events import BaseEventSink, get_event_sink
from .models import WorkflowExecution
from .persistence import WorkflowRepository, get_repository
from .registry import REGISTRY, HandlerRegistry
from .scheduler import ContinuationScheduler

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Bundles repository, event sink, scheduler, gate and coordinator."""

    def __init__(
        self,
        repository: WorkflowRepository,
        events: BaseEventSink,
        registry: HandlerRegistry,
        config: StepwiseConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.repository = repository
        self.events = events
        self.registry = registry
        self.scheduler = ContinuationScheduler(
            repository,
            poll_interval=config.scheduler.poll_interval,
            max_failures=config.scheduler.max_failures,
            clock=clock,
        )
        self.approvals = ApprovalGateManager(repository, events, clock=clock)
        self.coordinator = ExecutionCoordinator(
            repository,
            registry=registry,
            events=events,
            approvals=self.approvals,
            scheduler=self.scheduler,
            clock=clock,
        )
        self.definitions = WorkflowDefinitionService(
            repository, retry_defaults=config.retry, clock=clock
        )

    async def trigger_event(
        self, event: str, payload: Optional[Dict[str, Any]] = None
    ) -> list[WorkflowExecution]:
        """Start every active workflow whose trigger listens for ``event``."""
        executions = [
            await self.coordinator.start(definition, payload)
            for definition in await self.definitions.for_event(event)
        ]
        logger.info(f"Event {event} started {len(executions)} execution(s)")
        return executions

    async def stats(self, workflow_id: Optional[str] = None) -> ExecutionStats:
        return await collect_stats(self.repository, workflow_id)


def create_engine(
    config: Optional[StepwiseConfig] = None,
    *,
    repository: Optional[WorkflowRepository] = None,
    events: Optional[BaseEventSink] = None,
    registry: Optional[HandlerRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
) -> WorkflowEngine:
    """Build an engine; unspecified collaborators come from configuration."""
    config = config or load_config()
    return WorkflowEngine(
        repository=repository or get_repository(config=config),
        events=events or get_event_sink(config=config),
        registry=registry or REGISTRY,
        config=config,
        clock=clock,
    )
