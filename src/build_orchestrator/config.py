"""Configuration for the build orchestrator.

Option objects are frozen dataclasses passed per call or per component; the
library has no global configuration. ``load_settings`` reads the optional
TOML file used by the command-line interface.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from .circuit_breaker_config import CircuitBreakerConfig

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "build-orchestrator.toml"
TOKEN_ENV_VAR = "BUILD_ORCHESTRATOR_TOKEN"

_T = TypeVar("_T")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for retried upstream calls.

    Attributes:
        max_attempts: Total attempts including the first one.
        delay: Seconds slept before the second attempt.
        backoff: Multiplier applied after each failed attempt.
        max_delay: Upper bound for a single sleep.
    """

    max_attempts: int = 4
    delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 10.0


@dataclass(frozen=True)
class QueueConfig:
    """Settings for the queue orchestrator.

    Attributes:
        batch_concurrency: Submissions in flight during ``queue_builds``.
        personal_build_limit: Per-user personal build quota, if enforced.
        average_build_seconds: Assumed build length for wait estimates.
    """

    batch_concurrency: int = 5
    personal_build_limit: int | None = None
    average_build_seconds: float = 300.0  # 5 minutes


@dataclass(frozen=True)
class ProgressOptions:
    """Per-session options for the progress monitor.

    Attributes:
        polling_interval: Seconds between polls.
        calculate_velocity: Derive percent-per-second and an ETA.
        use_historical_data: Estimate from historical averages when the
            server gives no estimate.
        track_stages: Emit stage change events.
        calculate_stage_metrics: Emit metrics for each finished stage.
        include_tests: Request test counts with each poll.
        include_problems: Request build problems with each poll.
        stall_threshold: Seconds without progress before "stalled"; None disables.
        max_retries: Consecutive poll failures before the session stops.
        max_duration: Seconds before tracking is force-stopped; None for no limit.
    """

    polling_interval: float = 5.0
    calculate_velocity: bool = False
    use_historical_data: bool = False
    track_stages: bool = False
    calculate_stage_metrics: bool = False
    include_tests: bool = False
    include_problems: bool = False
    stall_threshold: float | None = 30.0
    max_retries: int = 3
    max_duration: float | None = None


@dataclass(frozen=True)
class ServerConfig:
    """Connection settings for the upstream CI server."""

    url: str = "http://127.0.0.1:8111"
    token: str | None = None
    timeout: float = 30.0


@dataclass(frozen=True)
class Settings:
    """Everything the command-line interface needs to build its components."""

    server: ServerConfig = field(default_factory=ServerConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    progress: ProgressOptions = field(default_factory=ProgressOptions)


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from a TOML file.

    A missing file yields the defaults. The server token falls back to the
    ``BUILD_ORCHESTRATOR_TOKEN`` environment variable.

    Args:
        path: Settings file; defaults to ``build-orchestrator.toml`` in the
            current directory.

    Returns:
        Parsed Settings.

    Raises:
        ValueError: On invalid TOML or a malformed section.
    """
    settings_file = path or Path(DEFAULT_SETTINGS_FILE)
    data: dict[str, Any] = {}
    if settings_file.exists():
        content = settings_file.read_text(encoding="utf-8")
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as exc:
            msg = f"Invalid TOML in {settings_file}: {exc}"
            raise ValueError(msg) from exc
        logger.debug("Loaded settings from %s", settings_file)
    elif path is not None:
        msg = f"Settings file not found: {settings_file}"
        raise FileNotFoundError(msg)

    return parse_settings(data)


def parse_settings(data: dict[str, Any]) -> Settings:
    """Parse raw TOML data into Settings.

    Unknown keys are ignored for forward compatibility.
    """
    server = _build(ServerConfig, _section(data, "server"), "server")
    if server.token is None and os.environ.get(TOKEN_ENV_VAR):
        server = dataclasses.replace(server, token=os.environ[TOKEN_ENV_VAR])

    return Settings(
        server=server,
        circuit_breaker=_build(
            CircuitBreakerConfig, _section(data, "circuit_breaker"), "circuit_breaker"
        ),
        retry=_build(RetryConfig, _section(data, "retry"), "retry"),
        queue=_build(QueueConfig, _section(data, "queue"), "queue"),
        progress=_build(ProgressOptions, _section(data, "progress"), "progress"),
    )


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        msg = f"[{name}] section must be a table"
        raise ValueError(msg)
    return section


def _build(cls: type[_T], values: dict[str, Any], section: str) -> _T:
    """Instantiate ``cls`` from the known keys of ``values``."""
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        if f.name not in values or f.name == "ignored_exceptions":
            continue
        value = values[f.name]
        if isinstance(value, bool) and f.type not in ("bool",):
            msg = f"{section}.{f.name} must not be a boolean"
            raise ValueError(msg)
        if f.type == "bool" and not isinstance(value, bool):
            msg = f"{section}.{f.name} must be a boolean"
            raise ValueError(msg)
        kwargs[f.name] = value
    return cls(**kwargs)
