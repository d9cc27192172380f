"""Circuit breaker CLI commands for the build orchestrator.

Breakers live inside one process, so ``circuits status`` probes the
upstream endpoints through a fresh manager and reports what it observed.
"""

from __future__ import annotations

from typing import Any

import click

from .cli_context import CLI_ERRORS, open_components, run_command
from .config import Settings
from .resilience import AGENTS_ENDPOINT, BUILD_QUEUE_ENDPOINT, BUILDS_ENDPOINT


@click.group()
def circuits() -> None:
    """Circuit breaker commands."""
    pass


@circuits.command(name="status")
@click.option("--attempts", "-n", default=1, show_default=True, help="Probe calls per endpoint")
@click.option(
    "--state",
    type=click.Choice(["closed", "open", "half_open"]),
    help="Filter by state",
)
@click.pass_obj
def circuits_status(settings: Settings, attempts: int, state: str | None) -> None:
    """Probe upstream endpoints and show circuit breaker status."""
    stats = run_command(_probe_async(settings, attempts))
    _print_circuit_status(stats, state)


async def _probe_async(settings: Settings, attempts: int) -> dict[str, dict[str, Any]]:
    """Call each endpoint ``attempts`` times through the shared breakers."""
    async with open_components(settings) as c:
        probes = {
            BUILD_QUEUE_ENDPOINT: c.client.get_queue,
            BUILDS_ENDPOINT: lambda: c.client.count_builds("state:running"),
            AGENTS_ENDPOINT: lambda: c.client.count_agents("enabled:true"),
        }
        for endpoint, probe in probes.items():
            for _ in range(attempts):
                try:
                    await c.breakers.execute(endpoint, probe)
                except CLI_ERRORS as exc:
                    click.echo(f"  {endpoint}: {exc}", err=True)
        return c.breakers.get_all_stats()


def _print_circuit_status(stats: dict[str, dict[str, Any]], state: str | None) -> None:
    """Print circuit status output."""
    click.echo("\n" + "=" * 60)
    click.echo("Circuit Breaker Status")
    click.echo("=" * 60)

    rows = {k: v for k, v in stats.items() if state is None or v["state"] == state}
    if not rows:
        click.echo("No circuits found.")
        return

    for endpoint, circuit in sorted(rows.items()):
        state_icon = {
            "closed": "[OK]",
            "open": "[X]",
            "half_open": "[~]",
        }.get(circuit["state"], "?")
        click.echo(
            f"  {state_icon} {endpoint}: "
            f"{circuit['state']} "
            f"(failures={circuit['failure_count']}, "
            f"successes={circuit['success_count']})"
        )
