"""Command line interface for running growthflow workers and operating workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .config import GrowthflowConfig, load_config
from .constants import DEFAULT_WORKFLOW_TYPE
from .definitions import load_definitions_file
from .errors import GrowthflowError
from .orchestrator import WorkflowOrchestrator
from .persistence import get_repository

T = TypeVar("T")

app = typer.Typer(help="CLI for growthflow account workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running the engine")
workflow_app = typer.Typer(help="Commands for managing account workflows")
definitions_app = typer.Typer(help="Commands for managing workflow definitions")
monitor_app = typer.Typer(help="Commands for health checks and alerts")
maintenance_app = typer.Typer(help="Housekeeping commands")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(definitions_app, name="definitions")
app.add_typer(monitor_app, name="monitor")
app.add_typer(maintenance_app, name="maintenance")

_state: dict[str, Optional[str]] = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """growthflow CLI entry point."""
    _state["config_path"] = str(config) if config else None
    settings = load_config(_state["config_path"])
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> GrowthflowConfig:
    return load_config(_state["config_path"])


def _repository(config: GrowthflowConfig):
    if _state["config_path"] is None:
        return get_repository()
    return get_repository(config=config)


def _run(operation: Callable[[WorkflowOrchestrator], Awaitable[T]]) -> T:
    """Run ``operation`` against a one-shot orchestrator.

    Background loops and recovery stay off; timers armed by the operation
    are dropped on exit and their tasks wait in the repository for a worker.
    """

    async def runner() -> T:
        config = _config()
        orchestrator = WorkflowOrchestrator(
            repository=_repository(config), config=config
        )
        await orchestrator.initialize(start_background=False, recover=False)
        try:
            return await operation(orchestrator)
        finally:
            await orchestrator.shutdown()

    try:
        return asyncio.run(runner())
    except GrowthflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _fmt(value: Any) -> str:
    return "-" if value is None else str(value)


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
    recover: bool = typer.Option(True, help="Recover in-flight workflows on start"),
) -> None:
    """
    Run the engine: recover workflows, then fire timers and poll for due tasks.

    Example:
        growthflow worker run
        growthflow --config prod.yaml worker run --lifespan 300
    """

    async def runner() -> None:
        config = _config()
        orchestrator = WorkflowOrchestrator(
            repository=_repository(config), config=config
        )
        recovered = await orchestrator.initialize(recover=recover)
        typer.echo(f"Worker {orchestrator.locks.holder} started; recovered {recovered} workflows")
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await orchestrator.shutdown()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        pass
    typer.echo("Worker stopped")


@workflow_app.command("start")
def workflow_start(
    account_id: str,
    workflow_type: str = typer.Option(DEFAULT_WORKFLOW_TYPE, "--type", "-t"),
    data: Optional[str] = typer.Option(None, help="Account data as a JSON object"),
) -> None:
    """
    Start a workflow for an account.

    Example:
        growthflow workflow start acct-1 --type aggressive --data '{"name": "x"}'
    """
    try:
        account_data = json.loads(data) if data else {}
    except json.JSONDecodeError as e:
        typer.secho(f"Invalid --data: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    instance = _run(lambda o: o.start(account_id, account_data, workflow_type))
    typer.echo(f"Started {instance.workflow_type} workflow {instance.id} for {account_id}")
    typer.echo(f"Next action at: {_fmt(instance.next_action_at)}")


@workflow_app.command("stop")
def workflow_stop(account_id: str) -> None:
    """Stop the account's workflow and cancel its pending steps."""
    instance = _run(lambda o: o.stop(account_id))
    typer.echo(f"Workflow {instance.id} for {account_id}: {instance.status.value}")


@workflow_app.command("pause")
def workflow_pause(account_id: str) -> None:
    """Pause the account's workflow."""
    instance = _run(lambda o: o.pause(account_id))
    typer.echo(f"Workflow {instance.id} for {account_id}: {instance.status.value}")


@workflow_app.command("resume")
def workflow_resume(account_id: str) -> None:
    """Resume a paused workflow, keeping the remaining delay."""
    instance = _run(lambda o: o.resume(account_id))
    typer.echo(f"Workflow {instance.id} for {account_id}: {instance.status.value}")
    typer.echo(f"Next action at: {_fmt(instance.next_action_at)}")


@workflow_app.command("status")
def workflow_status(account_id: str) -> None:
    """
    Show the status of the account's latest workflow.

    Example:
        growthflow workflow status acct-1
        # Output: Workflow 3f2c...: active (default)
        #         Step: 2/10 wait_before_first_batch
    """
    status = _run(lambda o: o.get_status(account_id))
    typer.echo(f"Workflow {status.instance_id}: {status.status} ({status.workflow_type})")
    typer.echo(
        f"Step: {status.current_step_index}/{status.total_steps} "
        f"{_fmt(status.current_step_id)}"
    )
    typer.echo(f"Retries: {status.retry_count}/{status.max_retries}")
    typer.echo(f"Next action at: {_fmt(status.next_action_at)}")
    if status.last_error:
        typer.echo(f"Last error: {status.last_error}")
    if status.final_error:
        typer.echo(f"Final error: {status.final_error}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List live workflows, one per line: account, status, step and type."""
    statuses = _run(lambda o: o.list_active())
    if not statuses:
        typer.echo("No active workflows")
        return
    for s in statuses:
        typer.echo(
            f"{s.account_id}\t{s.status}\t{s.current_step_index}/{s.total_steps}\t"
            f"{s.workflow_type}"
        )


@workflow_app.command("logs")
def workflow_logs(account_id: str) -> None:
    """Print the execution log of the account's latest workflow."""
    entries = _run(lambda o: o.list_execution_log(account_id))
    if not entries:
        typer.echo("No executions recorded")
        return
    for e in entries:
        outcome = "ok" if e.success else f"FAILED: {e.error_message}"
        typer.echo(
            f"{e.executed_at.isoformat()} [{e.step_index}] {e.step_id} ({e.action}) "
            f"attempt {e.attempt} {e.duration_ms}ms {outcome}"
        )


@definitions_app.command("list")
def definitions_list() -> None:
    """List stored workflow definitions."""
    definitions = _run(lambda o: o.repository.list_definitions())
    for d in definitions:
        typer.echo(f"{d.type}\t{d.name}\t{d.total_steps} steps")


@definitions_app.command("load")
def definitions_load(path: Path) -> None:
    """Store definitions from a YAML file, replacing ones with the same type."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        definitions = load_definitions_file(path)
    except ValueError as e:
        typer.secho(f"Invalid definitions file: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def save(orchestrator: WorkflowOrchestrator) -> None:
        for definition in definitions:
            await orchestrator.repository.save_definition(definition)

    _run(save)
    for d in definitions:
        typer.echo(f"Loaded {d.type} ({d.total_steps} steps)")


@monitor_app.command("health")
def monitor_health() -> None:
    """Run a health check and print the outcome."""
    report = _run(lambda o: o.health_check())
    typer.echo(f"Status: {report['status']}")
    for name, value in report["checks"].items():
        typer.echo(f"  {name}: {value}")
    for alert in report["alerts"]:
        typer.echo(f"  [{alert['severity'].value}] {alert['type']}: {alert['message']}")
    if report["status"] == "unhealthy":
        raise typer.Exit(code=1)


@monitor_app.command("alerts")
def monitor_alerts(
    severity: Optional[str] = typer.Option(None, help="info, warning, error or critical"),
    unacknowledged: bool = typer.Option(False, help="Hide acknowledged alerts"),
) -> None:
    """Show alerts raised by a health check run in this process."""

    async def collect(orchestrator: WorkflowOrchestrator):
        await orchestrator.health_check()
        return orchestrator.get_alerts(severity, include_acknowledged=not unacknowledged)

    alerts = _run(collect)
    if not alerts:
        typer.echo("No alerts")
        return
    for a in alerts:
        typer.echo(f"{a.id}\t{a.severity.value}\t{a.type}\t{a.message}")


@monitor_app.command("ack")
def monitor_ack(alert_id: str) -> None:
    """Acknowledge an alert held by this process."""

    async def ack(orchestrator: WorkflowOrchestrator) -> bool:
        return orchestrator.acknowledge_alert(alert_id)

    if not _run(ack):
        typer.secho(f"Alert {alert_id} not found", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Alert {alert_id} acknowledged")


@maintenance_app.command("cleanup")
def maintenance_cleanup(
    days: float = typer.Option(7.0, help="Delete finished tasks older than this"),
) -> None:
    """Purge old finished tasks and reap expired locks."""
    result = _run(lambda o: o.cleanup(older_than_days=days))
    typer.echo(
        f"Deleted {result['deleted_tasks']} tasks, reaped {result['expired_locks']} locks"
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
