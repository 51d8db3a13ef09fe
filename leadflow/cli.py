"""Command line interface for managing leadflow workflows and executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer

from leadflow.cli_utils.workflow import _format_execution, _format_workflow, _load_workflow_file
from leadflow.errors import InvalidWorkflowDefinition
from leadflow.persistence.models import ExecutionStatus, TriggerKind
from leadflow.service import WorkflowService, get_service

app = typer.Typer(help="CLI for leadflow email workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for managing workflow executions")
trigger_app = typer.Typer(help="Commands for firing lifecycle events")
scheduler_app = typer.Typer(help="Commands for processing scheduled steps")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(trigger_app, name="trigger")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level (DEBUG, INFO, ...)"),
) -> None:
    """leadflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


T = TypeVar("T")


def _run(action: Callable[[WorkflowService], Awaitable[T]]) -> T:
    """Run ``action`` against a configured service, then release its connections."""

    async def runner() -> T:
        service = get_service()
        try:
            return await action(service)
        finally:
            await service.close()

    return asyncio.run(runner())


def _parse_data(data: Optional[str]) -> dict:
    if not data:
        return {}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for --data: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(parsed, dict):
        typer.secho("--data must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return parsed


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("create")
def workflow_create(path: Path) -> None:
    """
    Create a workflow from a YAML definition file.

    Example:
        leadflow workflow create ./workflows/welcome.yaml
        # Output: Workflow created: Welcome-3
        #         ID: 4f1c...
    """
    try:
        data = _load_workflow_file(path)
    except (OSError, ValueError) as exc:
        typer.secho(f"Could not read workflow file: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        definition = _run(
            lambda service: service.create_workflow(
                name=data["name"],
                trigger=data["trigger"],
                steps=data["steps"],
                description=data.get("description"),
                active=data.get("active", True),
            )
        )
    except InvalidWorkflowDefinition as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow created: {definition.name}")
    typer.echo(f"ID: {definition.id}")


@workflow_app.command("list")
def workflow_list(active_only: bool = typer.Option(False, help="Only list active workflows")) -> None:
    """List workflows with their trigger and state."""
    workflows = _run(lambda service: service.list_workflows(active_only=active_only))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.trigger.kind.value}\t{state}\t{len(wf.steps)} steps")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's trigger, steps and execution counts."""

    async def load(service: WorkflowService):
        wf = await service.get_workflow(workflow_id)
        stats = await service.get_workflow_stats(workflow_id) if wf else None
        return wf, stats

    wf, stats = _run(load)
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    for line in _format_workflow(wf):
        typer.echo(line)
    typer.echo(
        f"Executions: {stats.total} total, {stats.running} running, {stats.completed} completed, "
        f"{stats.paused} paused, {stats.failed} failed"
    )


def _set_active(workflow_id: str, active: bool) -> None:
    found = _run(lambda service: service.set_workflow_active(workflow_id, active))
    if not found:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} {'activated' if active else 'deactivated'}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Allow new executions of a workflow to start."""
    _set_active(workflow_id, True)


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Stop new executions from starting. Running executions continue."""
    _set_active(workflow_id, False)


@workflow_app.command("stats")
def workflow_stats(workflow_id: str) -> None:
    """Print execution counts grouped by status as JSON."""
    stats = _run(lambda service: service.get_workflow_stats(workflow_id))
    typer.echo(stats.model_dump_json())


# ----------------------------------------------------------------------
# execution


@execution_app.command("start")
def execution_start(
    workflow_id: str,
    entity_ids: List[str],
    data: Optional[str] = typer.Option(None, help="JSON object stored as trigger data"),
) -> None:
    """
    Manually start a workflow for one or more entities.

    Example:
        leadflow execution start 4f1c... lead-42 lead-43
        # Output: lead-42: started 9a0b...
        #         lead-43: DUPLICATE_EXECUTION Execution already running ...
        #         2 total, 1 started, 1 errors
    """
    trigger_data = {"trigger": TriggerKind.MANUAL.value, **_parse_data(data)}
    summary = _run(
        lambda service: service.start_for_entities(workflow_id, entity_ids, trigger_data)
    )
    for item in summary.results:
        if item.result.success:
            typer.echo(f"{item.entity_id}: started {item.result.execution.id}")
        else:
            typer.echo(f"{item.entity_id}: {item.result.error_code} {item.result.error}")
    typer.echo(f"{summary.total} total, {summary.success} started, {summary.errors} errors")
    if summary.success == 0:
        raise typer.Exit(code=1)


def _report(result, verb: str) -> None:
    if not result.success:
        typer.secho(f"{result.error_code}: {result.error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {result.execution.id} {verb}")


@execution_app.command("pause")
def execution_pause(execution_id: str) -> None:
    """Pause a running execution."""
    _report(_run(lambda service: service.pause_workflow_execution(execution_id)), "paused")


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a paused execution; the wait for its next step restarts now."""
    _report(_run(lambda service: service.resume_workflow_execution(execution_id)), "resumed")


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(50, min=1),
    offset: int = typer.Option(0, min=0),
) -> None:
    """List executions, most recent first."""
    page = _run(
        lambda service: service.list_executions(
            workflow_id=workflow, status=status, limit=limit, offset=offset
        )
    )
    if not page.executions:
        typer.echo("No executions found")
        return
    for e in page.executions:
        typer.echo(f"{e.id}\t{e.workflow_id}\t{e.entity_id}\t{e.status.value}\tstep {e.current_step}")
    more = " (more available)" if page.has_more else ""
    typer.echo(f"Showing {len(page.executions)} of {page.total}{more}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution's state, error and full log."""
    execution = _run(lambda service: service.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    for line in _format_execution(execution):
        typer.echo(line)


# ----------------------------------------------------------------------
# trigger


@trigger_app.command("fire")
def trigger_fire(
    entity_id: str,
    kind: TriggerKind,
    data: Optional[str] = typer.Option(None, help="JSON event payload, e.g. '{\"newStatus\": \"QUALIFIED\"}'"),
) -> None:
    """Evaluate automatic triggers for a lifecycle event on an entity."""
    event_data = _parse_data(data)
    evaluation = _run(lambda service: service.evaluate_triggers(entity_id, kind, event_data))
    for execution_id in evaluation.started:
        typer.echo(f"Started execution {execution_id}")
    for failure in evaluation.failures:
        typer.echo(f"Workflow {failure.workflow_id}: {failure.error_code} {failure.error}")
    if not evaluation.started and not evaluation.failures:
        typer.echo("No workflows matched")


# ----------------------------------------------------------------------
# scheduler


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """
    Process all due executions once (for cron).

    Exits with code 1 when the pass itself fails; failures of individual
    executions are recorded on them and do not affect the exit code.
    """
    result = _run(lambda service: service.process_scheduled_steps())
    if not result.success:
        typer.secho(f"Processing failed: {result.error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{result.processed_count} executions processed")


@scheduler_app.command("run")
def scheduler_run(
    interval: Optional[float] = typer.Option(None, help="Seconds between passes"),
    iterations: Optional[int] = typer.Option(None, help="Stop after this many ticks"),
) -> None:
    """Process due executions periodically until interrupted."""
    typer.echo("Starting scheduler (Ctrl+C to stop)")
    try:
        _run(
            lambda service: service.scheduler.run_forever(
                interval_seconds=interval, iterations=iterations
            )
        )
    except KeyboardInterrupt:
        typer.echo("Scheduler stopped")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
