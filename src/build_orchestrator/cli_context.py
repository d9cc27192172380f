"""Component wiring shared by the CLI commands."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import click

from .circuit_breaker import CircuitBreakerManager, CircuitOpenError
from .client import QueueClient, UpstreamError
from .config import Settings
from .errors import OrchestratorError
from .progress_monitor import BuildProgressMonitor
from .queue_orchestrator import BuildQueueOrchestrator
from .resilience import create_breakers
from .status import BuildStatusService

T = TypeVar("T")

# Errors reported as "Error: ..." with exit code 1. pydantic.ValidationError
# is a ValueError.
CLI_ERRORS = (OrchestratorError, UpstreamError, CircuitOpenError, ValueError)


@dataclass
class Components:
    """Objects wired together for one CLI invocation."""

    client: QueueClient
    breakers: CircuitBreakerManager
    orchestrator: BuildQueueOrchestrator
    status: BuildStatusService
    monitor: BuildProgressMonitor


def make_client(settings: Settings) -> QueueClient:
    """Create the REST client described by ``settings.server``."""
    return QueueClient(
        settings.server.url, token=settings.server.token, timeout=settings.server.timeout
    )


@asynccontextmanager
async def open_components(settings: Settings) -> AsyncIterator[Components]:
    """Build the client and every component sharing one breaker manager."""
    client = make_client(settings)
    breakers = create_breakers(settings.circuit_breaker)
    status = BuildStatusService(client, breakers)
    components = Components(
        client=client,
        breakers=breakers,
        orchestrator=BuildQueueOrchestrator(
            client, breakers, config=settings.queue, retry_config=settings.retry
        ),
        status=status,
        monitor=BuildProgressMonitor(status),
    )
    try:
        yield components
    finally:
        await components.monitor.close()
        await client.close()


def run_command(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async command body, turning known errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except CLI_ERRORS as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
