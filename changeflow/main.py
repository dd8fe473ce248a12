"""CLI entry point for the workflow orchestration engine."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import structlog
import yaml
from pydantic import ValidationError

from changeflow.config.settings import OrchestratorSettings
from changeflow.engine.backends import FileSessionBackend
from changeflow.engine.service import WorkflowService
from changeflow.engine.session_store import SessionStore
from changeflow.exceptions import ChangeflowError, ConfigurationError
from changeflow.models.domain import ChangeBatch, SessionSummary
from changeflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--config",
    default="changeflow/config/changeflow_config.yaml",
    help="Path to configuration file",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=False, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """changeflow: apply batches of code changes through a phased pipeline."""
    configure_logging(log_level, json_output=json_logs)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = OrchestratorSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--wait/--no-wait", default=True, help="Wait for the pipeline to finish")
@click.pass_context
def submit(ctx: click.Context, batch_file: str, wait: bool) -> None:
    """Submit a change batch from a JSON or YAML file."""
    _run_command("submit", _submit(ctx.obj["settings"], batch_file, wait))


@cli.command()
@click.argument("session_id")
@click.pass_context
def status(ctx: click.Context, session_id: str) -> None:
    """Show the status of a session."""
    _run_command("status", _show_status(ctx.obj["settings"], session_id))


@cli.command()
@click.argument("session_id")
@click.pass_context
def cancel(ctx: click.Context, session_id: str) -> None:
    """Cancel a session that has not started deploying."""
    _run_command("cancel", _cancel(ctx.obj["settings"], session_id))


@cli.command()
@click.pass_context
def sessions(ctx: click.Context) -> None:
    """List stored sessions."""
    _run_command("sessions", _list_sessions(ctx.obj["settings"]))


@cli.command()
@click.option("--older-than", type=int, default=None, help="Also remove sessions started more than N days ago")
@click.pass_context
def purge(ctx: click.Context, older_than: int | None) -> None:
    """Remove expired sessions."""
    _run_command("purge", _purge(ctx.obj["settings"], older_than))


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8000, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from changeflow.api import create_app

    settings = ctx.obj["settings"]
    app = create_app(create_service(settings))
    log.info("api_server_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port)


def _run_command(name: str, coro: Any) -> None:
    try:
        asyncio.run(coro)
    except ChangeflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{name}_unexpected", exc_info=True)
        sys.exit(1)


def create_store(settings: OrchestratorSettings) -> SessionStore:
    """Create a file-backed session store from settings."""
    return SessionStore(
        FileSessionBackend(settings.state_dir),
        ttl_seconds=settings.store.ttl_seconds,
        log_retention=settings.store.log_retention,
        summary_log_count=settings.store.summary_log_count,
    )


def create_service(settings: OrchestratorSettings) -> WorkflowService:
    """Create a workflow service over a file-backed store."""
    return WorkflowService(create_store(settings), settings)


def load_batch(path: str) -> ChangeBatch:
    """Load a change batch from a JSON or YAML file.

    Raises:
        ConfigurationError: If the file cannot be parsed or validated
    """
    batch_path = Path(path)
    try:
        content = batch_path.read_text()
        if batch_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read batch file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError("Batch file must contain an object")

    try:
        return ChangeBatch.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid batch in {path}: {e}") from e


def _echo_summary(summary: SessionSummary) -> None:
    click.echo(f"\nSession {summary.id} ({summary.kind})\n")
    click.echo(f"Status:   {summary.status}")
    click.echo(f"Progress: {summary.progress:.0f}%")
    click.echo(f"Step:     {summary.current_step}")
    click.echo(f"Files:    {summary.completed_files}/{summary.total_files} done, {summary.failed_files} failed")
    if summary.branch_name:
        click.echo(f"Branch:   {summary.branch_name}")
    if summary.pr_url:
        click.echo(f"PR:       {summary.pr_url}")
    if summary.preview_url:
        click.echo(f"Preview:  {summary.preview_url}")
    if summary.error:
        click.echo(f"Error:    {summary.error} ({summary.failure_reason})")
    if summary.retry_state:
        retry = summary.retry_state
        click.echo(f"Retry:    attempt {retry.attempt}/{retry.max_attempts}: {retry.last_error}")

    if summary.logs:
        click.echo("\nRecent logs:")
        for entry in summary.logs:
            click.echo(f"  [{entry.level}] {entry.timestamp:%H:%M:%S} {entry.message}")


async def _submit(settings: OrchestratorSettings, batch_file: str, wait: bool) -> None:
    batch = load_batch(batch_file)
    service = create_service(settings)

    session_id = await service.submit(batch)
    click.echo(f"Submitted session {session_id}")
    if not wait:
        # The background run does not outlive this process.
        await service.shutdown()
        return

    try:
        await service.wait(session_id)
    finally:
        await service.shutdown()

    summary = await service.get_status(session_id)
    if summary is None:
        click.echo(f"Session {session_id} expired before completion.", err=True)
        sys.exit(1)
    _echo_summary(summary)
    if summary.failure_reason is not None:
        sys.exit(1)


async def _show_status(settings: OrchestratorSettings, session_id: str) -> None:
    summary = await create_store(settings).summary(session_id)
    if summary is None:
        click.echo(f"Session {session_id} not found.", err=True)
        sys.exit(1)
    _echo_summary(summary)


async def _cancel(settings: OrchestratorSettings, session_id: str) -> None:
    summary = await create_service(settings).cancel(session_id)
    click.echo(f"Session {summary.id} cancelled")


async def _list_sessions(settings: OrchestratorSettings) -> None:
    stored = await create_store(settings).list_sessions()
    if not stored:
        click.echo("No sessions found.")
        return

    click.echo(f"Sessions ({len(stored)}):\n")
    for session in sorted(stored, key=lambda s: s.started_at, reverse=True):
        click.echo(f"  • {session.id}: {session.status} {session.progress:.0f}% ({session.current_step})")


async def _purge(settings: OrchestratorSettings, older_than: int | None) -> None:
    store = create_store(settings)
    removed = await store.purge_expired()
    if older_than is not None:
        removed += await store.cleanup_older_than(older_than)
    click.echo(f"Removed {removed} session(s)")


if __name__ == "__main__":
    cli()
