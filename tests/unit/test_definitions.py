"""Definition service tests."""

import pytest
from pydantic import ValidationError

from stepwise.config import RetryDefaults
from stepwise.contracts import DefinitionStatus, TriggerKind
from stepwise.definitions import WorkflowDefinitionService
from stepwise.errors import DefinitionNotFound, InvalidStateTransition
from stepwise.models import ExecutionStatus, WorkflowExecution

STEPS = [
    {"id": "a", "kind": "action", "config": {"action": "x"}, "next_steps": ["b"]},
    {"id": "b", "kind": "notification", "error_handling": {"max_retries": 1}},
]


@pytest.fixture
def service(repository, clock):
    return WorkflowDefinitionService(
        repository, retry_defaults=RetryDefaults(max_retries=9, retry_delay_seconds=2), clock=clock
    )


@pytest.mark.asyncio
async def test_create_applies_retry_defaults(service, clock):
    definition = await service.create("invoice", STEPS, description="pay invoices")

    assert definition.version == 1
    assert definition.status == DefinitionStatus.DRAFT
    assert definition.created_at == clock()
    assert definition.steps[0].error_handling.max_retries == 9
    assert definition.steps[0].error_handling.retry_delay_seconds == 2
    assert definition.steps[1].error_handling.max_retries == 1
    assert (await service.get(definition.id)) == definition


@pytest.mark.asyncio
async def test_update_stores_new_version(service, clock):
    definition = await service.create("invoice", STEPS)
    clock.advance(60)

    updated = await service.update(definition.id, name="invoice-v2")

    assert updated.version == 2
    assert updated.name == "invoice-v2"
    assert updated.updated_at == clock()
    assert updated.created_at == definition.created_at
    assert (await service.get(definition.id, 1)).name == "invoice"
    assert (await service.get(definition.id)).version == 2


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields_and_bad_steps(service):
    definition = await service.create("invoice", STEPS)
    with pytest.raises(ValueError):
        await service.update(definition.id, version=10)
    with pytest.raises(ValidationError):
        await service.update(definition.id, steps=[{"id": "a", "kind": "action", "config": {}}])
    with pytest.raises(DefinitionNotFound):
        await service.update("missing", name="x")


@pytest.mark.asyncio
async def test_activate_and_deactivate(service):
    definition = await service.create("invoice", STEPS)

    active = await service.activate(definition.id)
    assert active.is_active
    assert active.version == 2
    assert [d.id for d in await service.list(DefinitionStatus.ACTIVE)] == [definition.id]

    inactive = await service.deactivate(definition.id)
    assert inactive.status == DefinitionStatus.INACTIVE
    assert await service.list(DefinitionStatus.ACTIVE) == []


@pytest.mark.asyncio
async def test_delete_refused_while_executions_live(service, repository):
    definition = await service.create("invoice", STEPS)
    live = WorkflowExecution(workflow_id=definition.id, definition_version=1)
    await repository.create_execution(live)

    with pytest.raises(InvalidStateTransition):
        await service.delete(definition.id)

    live.status = ExecutionStatus.COMPLETED
    await repository.update_execution(live)
    await service.delete(definition.id)
    with pytest.raises(DefinitionNotFound):
        await service.get(definition.id)


@pytest.mark.asyncio
async def test_for_event_matches_active_event_triggers(service):
    trigger = {"kind": "event", "parameters": {"event": "invoice.received"}}
    matching = await service.create("a", STEPS, trigger=trigger, status=DefinitionStatus.ACTIVE)
    await service.create("draft", STEPS, trigger=trigger)
    await service.create(
        "other",
        STEPS,
        trigger={"kind": "event", "parameters": {"event": "invoice.paid"}},
        status=DefinitionStatus.ACTIVE,
    )
    await service.create("manual", STEPS, status=DefinitionStatus.ACTIVE)

    found = await service.for_event("invoice.received")
    assert [d.id for d in found] == [matching.id]
    assert found[0].trigger.kind == TriggerKind.EVENT
