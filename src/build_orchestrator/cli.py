"""CLI for the build orchestrator.

Queue builds, inspect and reorder the queue, and watch build progress from
the command line.
"""

from __future__ import annotations

import dataclasses
import logging
import sys
from pathlib import Path

import click
import pydantic

from .cli_circuits import circuits
from .cli_context import open_components, run_command
from .config import ProgressOptions, Settings, load_settings
from .errors import OrchestratorError
from .events import EventName
from .models import BuildDependency, QueueBuildRequest, QueuePosition
from .progress_monitor import BuildProgressMonitor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Settings file (default: ./build-orchestrator.toml if present)",
)
@click.option("--server", envvar="BUILD_ORCHESTRATOR_URL", help="CI server base URL")
@click.option("--token", envvar="BUILD_ORCHESTRATOR_TOKEN", help="API token")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_path: Path | None,
    server: str | None,
    token: str | None,
) -> None:
    """Build Orchestrator - queue builds and track them to completion."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    overrides: dict[str, str] = {}
    if server:
        overrides["url"] = server
    if token:
        overrides["token"] = token
    if overrides:
        settings = dataclasses.replace(
            settings, server=dataclasses.replace(settings.server, **overrides)
        )
    ctx.obj = settings


cli.add_command(circuits)


def _parse_params(values: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--param")
        params[name] = value
    return params


def _validation_message(exc: pydantic.ValidationError) -> str:
    return "; ".join(error["msg"] for error in exc.errors())


def _format_position(pos: QueuePosition) -> str:
    if pos.position == 0:
        return f"Build {pos.build_id} has left the queue"
    line = f"Build {pos.build_id}: position {pos.position}"
    if pos.blocked_by:
        line += f" (blocked by {', '.join(pos.blocked_by)})"
    if pos.estimated_wait_time is not None:
        line += f", estimated wait {pos.estimated_wait_time:.0f}s"
    return line


@cli.command()
@click.argument("build_type_id")
@click.option("--branch", "-b", help="Branch to build")
@click.option("--param", "-p", "params", multiple=True, help="Build parameter NAME=VALUE")
@click.option("--personal", is_flag=True, help="Queue a personal build")
@click.option("--top", is_flag=True, help="Move the build to the top of the queue")
@click.option("--comment", help="Comment attached to the build")
@click.option("--depends-on", "depends_on", multiple=True, help="Snapshot dependency build id")
@click.option("--watch", is_flag=True, help="Track the build until it finishes")
@click.pass_obj
def queue(
    settings: Settings,
    build_type_id: str,
    branch: str | None,
    params: tuple[str, ...],
    personal: bool,
    top: bool,
    comment: str | None,
    depends_on: tuple[str, ...],
    watch: bool,
) -> None:
    """Add a build of BUILD_TYPE_ID to the queue."""
    parameters = _parse_params(params)
    try:
        request = QueueBuildRequest(
            build_type_id=build_type_id,
            branch=branch,
            parameters=parameters,
            personal=personal,
            move_to_top=top,
            comment=comment,
            dependencies=[BuildDependency(build_id=dep) for dep in depends_on],
        )
    except pydantic.ValidationError as exc:
        click.echo(f"Error: {_validation_message(exc)}", err=True)
        sys.exit(1)
    outcome = run_command(_queue_async(settings, request, watch))
    _exit_for_outcome(outcome)


async def _queue_async(
    settings: Settings, request: QueueBuildRequest, watch: bool
) -> str | None:
    async with open_components(settings) as c:
        queued = await c.orchestrator.queue_build(request)
        click.echo(f"Queued build {queued.build_id} at position {queued.queue_position}")
        if queued.web_url:
            click.echo(f"  {queued.web_url}")
        if watch:
            return await _watch_session(c.monitor, queued.build_id, settings.progress)
    return None


@cli.command()
@click.argument("build_id")
@click.pass_obj
def position(settings: Settings, build_id: str) -> None:
    """Show the queue position of BUILD_ID."""
    run_command(_position_async(settings, build_id))


async def _position_async(settings: Settings, build_id: str) -> None:
    async with open_components(settings) as c:
        click.echo(_format_position(await c.orchestrator.get_queue_position(build_id)))


@cli.command(name="move-to-top")
@click.argument("build_id")
@click.pass_obj
def move_to_top(settings: Settings, build_id: str) -> None:
    """Move BUILD_ID to the top of the queue."""
    run_command(_move_to_top_async(settings, build_id))


async def _move_to_top_async(settings: Settings, build_id: str) -> None:
    async with open_components(settings) as c:
        click.echo(_format_position(await c.orchestrator.move_to_top(build_id)))


@cli.command()
@click.argument("build_ids", nargs=-1, required=True)
@click.pass_obj
def reorder(settings: Settings, build_ids: tuple[str, ...]) -> None:
    """Put BUILD_IDS at the front of the queue in the given order."""
    run_command(_reorder_async(settings, list(build_ids)))


async def _reorder_async(settings: Settings, build_ids: list[str]) -> None:
    async with open_components(settings) as c:
        for pos in await c.orchestrator.reorder_queue(build_ids):
            click.echo(_format_position(pos))


@cli.command()
@click.argument("build_id")
@click.option("--comment", help="Cancellation comment")
@click.pass_obj
def cancel(settings: Settings, build_id: str, comment: str | None) -> None:
    """Remove queued build BUILD_ID from the queue."""
    run_command(_cancel_async(settings, build_id, comment))


async def _cancel_async(settings: Settings, build_id: str, comment: str | None) -> None:
    async with open_components(settings) as c:
        await c.orchestrator.cancel_build(build_id, comment)
        click.echo(f"Canceled build {build_id}")


@cli.command()
@click.argument("build_type_id")
@click.pass_obj
def limits(settings: Settings, build_type_id: str) -> None:
    """Show queue capacity for BUILD_TYPE_ID."""
    run_command(_limits_async(settings, build_type_id))


async def _limits_async(settings: Settings, build_type_id: str) -> None:
    async with open_components(settings) as c:
        lim = await c.orchestrator.get_queue_limitations(build_type_id)
    max_builds = lim.max_concurrent_builds if lim.max_concurrent_builds is not None else "unlimited"
    click.echo(f"Queue limitations for {build_type_id}:")
    click.echo(f"  Max concurrent builds: {max_builds}")
    click.echo(f"  Currently running:     {lim.currently_running}")
    click.echo(f"  Queued:                {lim.queued_builds}")
    click.echo(f"  Compatible agents:     {lim.available_agents}")
    if lim.personal_build_limit is not None:
        click.echo(
            f"  Personal builds:       {lim.user_personal_builds}/{lim.personal_build_limit}"
        )


@cli.command()
@click.argument("build_id")
@click.option("--interval", type=float, default=None, help="Seconds between polls")
@click.option("--stall-threshold", type=float, default=None, help="Seconds before 'stalled'")
@click.option("--max-duration", type=float, default=None, help="Stop watching after N seconds")
@click.option("--stages", is_flag=True, help="Report stage changes and stage metrics")
@click.pass_obj
def watch(
    settings: Settings,
    build_id: str,
    interval: float | None,
    stall_threshold: float | None,
    max_duration: float | None,
    stages: bool,
) -> None:
    """Poll BUILD_ID and print its progress until it finishes."""
    overrides: dict[str, object] = {"calculate_velocity": True}
    if interval is not None:
        overrides["polling_interval"] = interval
    if stall_threshold is not None:
        overrides["stall_threshold"] = stall_threshold
    if max_duration is not None:
        overrides["max_duration"] = max_duration
    if stages:
        overrides["track_stages"] = True
        overrides["calculate_stage_metrics"] = True
    options = dataclasses.replace(settings.progress, **overrides)
    _exit_for_outcome(run_command(_watch_async(settings, build_id, options)))


async def _watch_async(
    settings: Settings, build_id: str, options: ProgressOptions
) -> str | None:
    async with open_components(settings) as c:
        return await _watch_session(c.monitor, build_id, options)


async def _watch_session(
    monitor: BuildProgressMonitor, build_id: str, options: ProgressOptions
) -> str | None:
    """Print session events until the session ends.

    Returns:
        The terminal event name, or None if the stream ended without one.

    Raises:
        OrchestratorError: If tracking stopped before the build finished.
    """
    session = monitor.track_build_progress(build_id, options)
    outcome: str | None = None
    async for name, payload in session.events():
        if name == EventName.PROGRESS.value:
            line = f"[{payload.state}] {payload.percentage_complete:.0f}%"
            if payload.status.current_stage_text:
                line += f" {payload.status.current_stage_text}"
            if payload.estimated_time_remaining is not None:
                line += f" (~{payload.estimated_time_remaining:.0f}s left)"
            click.echo(line)
        elif name == EventName.STARTED.value:
            click.echo(f"Build {build_id} started")
        elif name == EventName.STALLED.value:
            click.echo(
                f"Build {build_id} stalled at {payload.percentage_complete:.0f}% "
                f"for {payload.time_since_progress:.0f}s",
                err=True,
            )
        elif name == EventName.STAGE_COMPLETED.value:
            click.echo(f"  stage {payload.stage_name!r} took {payload.duration:.1f}s")
        elif name == EventName.ERROR.value:
            click.echo(f"Poll failed: {payload.message}", err=True)
        elif name in (EventName.COMPLETED.value, EventName.FAILED.value, EventName.CANCELED.value):
            outcome = name
            click.echo(f"Build {build_id} {name}")
        elif name == EventName.STOPPED.value:
            raise OrchestratorError(f"Stopped watching build {build_id}: {payload.reason.value}")

    return outcome


def _exit_for_outcome(outcome: str | None) -> None:
    if outcome in (EventName.FAILED.value, EventName.CANCELED.value):
        sys.exit(2)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
