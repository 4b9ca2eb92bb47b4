"""Workflow definition management.

Every update stores a new version; executions keep running against the
version they were started with.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Union

from pydantic import BaseModel

from .config import RetryDefaults
from .contracts import (
    DefinitionStatus,
    TriggerKind,
    WorkflowDefinition,
    WorkflowTrigger,
    utcnow,
)
from .errors import DefinitionNotFound, InvalidStateTransition
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "description", "trigger", "steps", "status"})

StepInput = Union[Dict[str, Any], BaseModel]


class WorkflowDefinitionService:
    def __init__(
        self,
        repository: WorkflowRepository,
        retry_defaults: Optional[RetryDefaults] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._retry_defaults = retry_defaults or RetryDefaults()
        self._clock = clock

    def _prepare_steps(self, steps: Iterable[StepInput]) -> list[Any]:
        """Fill in configured retry defaults for steps given as plain dicts."""
        prepared: list[Any] = []
        for step in steps:
            if isinstance(step, dict) and "error_handling" not in step:
                step = {**step, "error_handling": self._retry_defaults.model_dump()}
            prepared.append(step)
        return prepared

    async def create(
        self,
        name: str,
        steps: Iterable[StepInput] = (),
        description: str = "",
        trigger: Optional[Union[WorkflowTrigger, Dict[str, Any]]] = None,
        status: DefinitionStatus = DefinitionStatus.DRAFT,
    ) -> WorkflowDefinition:
        now = self._clock()
        definition = WorkflowDefinition(
            name=name,
            description=description,
            trigger=trigger or WorkflowTrigger(),
            steps=self._prepare_steps(steps),
            status=status,
            version=1,
            created_at=now,
            updated_at=now,
        )
        await self._repository.save_definition(definition)
        logger.info(f"Created workflow: {definition.id}")
        return definition

    async def get(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        definition = await self._repository.get_definition(workflow_id, version)
        if definition is None:
            raise DefinitionNotFound(workflow_id, version)
        return definition

    async def list(self, status: Optional[DefinitionStatus] = None) -> list[WorkflowDefinition]:
        return await self._repository.list_definitions(status)

    async def update(self, workflow_id: str, **changes: Any) -> WorkflowDefinition:
        """Store a new version with ``changes`` applied.

        Raises:
            DefinitionNotFound: Unknown workflow id.
            ValueError: A change names a field that cannot be updated.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        existing = await self.get(workflow_id)
        data = existing.model_dump()
        if "steps" in changes:
            changes["steps"] = self._prepare_steps(changes["steps"])
        data.update(changes)
        data["version"] = existing.version + 1
        data["updated_at"] = self._clock()
        updated = WorkflowDefinition.model_validate(data)
        await self._repository.save_definition(updated)
        logger.info(f"Updated workflow: {workflow_id} (version {updated.version})")
        return updated

    async def activate(self, workflow_id: str) -> WorkflowDefinition:
        return await self.update(workflow_id, status=DefinitionStatus.ACTIVE)

    async def deactivate(self, workflow_id: str) -> WorkflowDefinition:
        return await self.update(workflow_id, status=DefinitionStatus.INACTIVE)

    async def delete(self, workflow_id: str) -> None:
        """Delete every version of a definition.

        Raises:
            DefinitionNotFound: Unknown workflow id.
            InvalidStateTransition: Executions of the workflow are still live.
        """
        await self.get(workflow_id)
        live = [
            e
            for e in await self._repository.list_executions(workflow_id=workflow_id)
            if not e.is_terminal
        ]
        if live:
            raise InvalidStateTransition(
                f"Workflow {workflow_id} has {len(live)} execution(s) in progress"
            )
        await self._repository.delete_definition(workflow_id)
        logger.info(f"Deleted workflow: {workflow_id}")

    async def for_event(self, event: str) -> list[WorkflowDefinition]:
        """Active definitions triggered by ``event``."""
        return [
            d
            for d in await self._repository.list_definitions(DefinitionStatus.ACTIVE)
            if d.trigger.kind == TriggerKind.EVENT
            and d.trigger.parameters.get("event") == event
        ]
