"""Command line interface for operating Stepwise workflows."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
import yaml

from stepwise.config import load_config
from stepwise.contracts import DefinitionStatus
from stepwise.engine import WorkflowEngine, create_engine
from stepwise.errors import WorkflowError
from stepwise.models import ApprovalStatus, ExecutionStatus, WorkflowExecution
from stepwise.persistence import get_repository

T = TypeVar("T")

app = typer.Typer(help="CLI for Stepwise workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting and steering executions")
approval_app = typer.Typer(help="Commands for approval requests")
scheduler_app = typer.Typer(help="Commands for the continuation scheduler")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(approval_app, name="approval")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    handlers: List[str] = typer.Option(
        [], "--handlers", "-H", help="Module that registers step handlers on import"
    ),
) -> None:
    """Stepwise CLI entry point."""
    config = load_config()
    logging.basicConfig(level=config.log_level.upper())
    for module in handlers:
        importlib.import_module(module)


def _engine() -> WorkflowEngine:
    return create_engine(load_config(), repository=get_repository())


def _run(factory: Callable[[WorkflowEngine], Awaitable[T]]) -> T:
    """Run an engine coroutine, turning engine errors into exit code 1."""
    engine = _engine()

    async def _call() -> T:
        try:
            return await factory(engine)
        finally:
            await engine.events.disconnect()

    try:
        return asyncio.run(_call())
    except (WorkflowError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for {option}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(parsed, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return parsed


def _echo_execution(execution: WorkflowExecution) -> None:
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id} (version {execution.definition_version})")
    if execution.current_step_id:
        typer.echo(f"Current step: {execution.current_step_id}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")


@workflow_app.command("list")
def workflow_list(
    status: Optional[DefinitionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List workflow definitions, newest first.

    Example:
        stepwise workflow list --status active
        # Output: 3f2a...    invoice-approval    v2    active
    """
    definitions = _run(lambda engine: engine.definitions.list(status))
    if not definitions:
        typer.echo("No workflows found")
        return
    for definition in definitions:
        typer.echo(
            f"{definition.id}\t{definition.name}\tv{definition.version}\t{definition.status.value}"
        )


@workflow_app.command("show")
def workflow_show(
    workflow_id: str,
    version: Optional[int] = typer.Option(None, help="Specific version to show"),
) -> None:
    """Show a workflow definition and its steps."""
    definition = _run(lambda engine: engine.definitions.get(workflow_id, version))
    typer.echo(
        f"Workflow {definition.id}: {definition.name} "
        f"(version {definition.version}, {definition.status.value})"
    )
    if definition.description:
        typer.echo(definition.description)
    typer.echo(f"Trigger: {definition.trigger.kind.value}")
    for step in definition.steps:
        following = ", ".join(step.next_steps) or "(end)"
        typer.echo(f"- {step.id} [{step.kind}] -> {following}")


@workflow_app.command("create")
def workflow_create(
    path: Path,
    activate: bool = typer.Option(False, help="Activate the workflow after creating it"),
) -> None:
    """
    Create a workflow definition from a YAML or JSON file.

    The file holds ``name``, optional ``description`` and ``trigger``, and
    the list of ``steps``.

    Example:
        stepwise workflow create ./invoice.yaml --activate
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict) or "name" not in data:
        typer.secho("Workflow file must define a name", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    status = DefinitionStatus.ACTIVE if activate else DefinitionStatus.DRAFT

    async def _create(engine: WorkflowEngine):
        return await engine.definitions.create(
            name=data["name"],
            steps=data.get("steps") or [],
            description=data.get("description", ""),
            trigger=data.get("trigger"),
            status=status,
        )

    definition = _run(_create)
    typer.echo(f"Created workflow {definition.id} ({definition.status.value})")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Activate a workflow so executions can start."""
    definition = _run(lambda engine: engine.definitions.activate(workflow_id))
    typer.echo(f"Workflow {definition.id} active (version {definition.version})")


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Deactivate a workflow; running executions are unaffected."""
    definition = _run(lambda engine: engine.definitions.deactivate(workflow_id))
    typer.echo(f"Workflow {definition.id} inactive (version {definition.version})")


@workflow_app.command("delete")
def workflow_delete(workflow_id: str) -> None:
    """Delete every version of a workflow without live executions."""
    _run(lambda engine: engine.definitions.delete(workflow_id))
    typer.echo(f"Deleted workflow {workflow_id}")


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List executions, most recently started first.

    Example:
        stepwise execution list --status paused
        # Output: abc123...    3f2a...    paused    approve
    """
    executions = _run(lambda engine: engine.coordinator.list_executions(workflow_id, status))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}"
            f"\t{execution.current_step_id or '-'}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution's state, context and step history."""

    async def _load(engine: WorkflowEngine):
        execution = await engine.coordinator.get_execution(execution_id)
        return execution, await engine.coordinator.step_history(execution_id)

    execution, records = _run(_load)
    _echo_execution(execution)
    if execution.context:
        typer.echo(f"Context: {json.dumps(execution.context, default=str)}")
    for record in records:
        typer.echo(
            f"- {record.step_id} #{record.attempt}: {record.status}"
            + (
                f" ({record.started_at} -> {record.completed_at})"
                if record.started_at or record.completed_at
                else ""
            )
        )


@execution_app.command("start")
def execution_start(
    workflow_id: str,
    context: Optional[str] = typer.Option(None, help="Initial context as a JSON object"),
) -> None:
    """
    Start an execution of the latest workflow version.

    Example:
        stepwise -H myapp.handlers execution start 3f2a... --context '{"amount": 150}'
    """
    initial = _parse_json(context, "--context")
    execution = _run(lambda engine: engine.coordinator.start_by_id(workflow_id, initial))
    _echo_execution(execution)


@execution_app.command("pause")
def execution_pause(execution_id: str) -> None:
    """Pause a running execution."""
    execution = _run(lambda engine: engine.coordinator.pause(execution_id))
    _echo_execution(execution)


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a paused execution."""
    execution = _run(lambda engine: engine.coordinator.resume(execution_id))
    _echo_execution(execution)


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel an execution. Finished executions are left unchanged."""
    execution = _run(lambda engine: engine.coordinator.cancel(execution_id))
    _echo_execution(execution)


@app.command("trigger")
def trigger(
    event: str,
    payload: Optional[str] = typer.Option(None, help="Event payload as a JSON object"),
) -> None:
    """Start every active workflow triggered by EVENT."""
    data = _parse_json(payload, "--payload")
    executions = _run(lambda engine: engine.trigger_event(event, data))
    if not executions:
        typer.echo(f"No workflows listen for {event}")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}")


@approval_app.command("list")
def approval_list(
    approver: Optional[str] = typer.Option(None, help="Only requests for this approver"),
) -> None:
    """List pending approval requests."""
    requests = _run(lambda engine: engine.approvals.list_pending(approver))
    if not requests:
        typer.echo("No pending approvals")
        return
    for request in requests:
        typer.echo(
            f"{request.id}\t{request.execution_id}\t{request.step_id}\t{request.approver_id}"
        )


@approval_app.command("respond")
def approval_respond(
    request_id: str,
    decision: ApprovalStatus,
    comments: Optional[str] = typer.Option(None, help="Comment stored with the decision"),
) -> None:
    """
    Approve or reject a pending request.

    Example:
        stepwise approval respond 9c1e... approved --comments "looks fine"
    """
    if decision == ApprovalStatus.PENDING:
        typer.secho("Decision must be 'approved' or 'rejected'", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    request = _run(lambda engine: engine.approvals.respond(request_id, decision, comments))
    typer.echo(f"Approval request {request.id}: {request.status.value}")


@app.command("stats")
def stats(
    workflow_id: Optional[str] = typer.Option(None, help="Restrict to one workflow"),
) -> None:
    """Show execution statistics."""
    result = _run(lambda engine: engine.stats(workflow_id))
    typer.echo(f"Total executions: {result.total_executions}")
    typer.echo(f"Successful: {result.successful_executions}")
    typer.echo(f"Failed: {result.failed_executions}")
    typer.echo(f"Average execution time: {result.average_execution_time:.2f}s")
    typer.echo(f"Success rate: {result.success_rate:.1f}%")


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
    recover: bool = typer.Option(
        True, help="Re-run executions left running without a pending continuation"
    ),
) -> None:
    """
    Fire delay and retry continuations as they become due.

    Example:
        stepwise -H myapp.handlers scheduler run --lifespan 300
    """

    async def _serve(engine: WorkflowEngine) -> None:
        if recover:
            await engine.coordinator.recover()
        await engine.scheduler.run(lifespan=lifespan)

    typer.echo("Starting scheduler")
    _run(_serve)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
