"""Retry and circuit breaker composition for upstream calls."""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .circuit_breaker import CircuitBreakerManager
from .circuit_breaker_config import DEFAULT_CONFIG, CircuitBreakerConfig
from .client.errors import UpstreamClientError
from .config import RetryConfig
from .retry import is_retryable, retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Breaker keys for the upstream endpoints
BUILD_QUEUE_ENDPOINT = "buildQueue"
BUILDS_ENDPOINT = "builds"
BUILD_TYPES_ENDPOINT = "buildTypes"
AGENTS_ENDPOINT = "agents"


def create_breakers(
    config: CircuitBreakerConfig | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> CircuitBreakerManager:
    """Create a breaker manager whose breakers ignore 4xx responses.

    A 4xx answer proves the endpoint is reachable, so it must not push a
    breaker toward OPEN.
    """
    base = config or DEFAULT_CONFIG
    ignored = tuple(base.ignored_exceptions)
    if UpstreamClientError not in ignored:
        ignored = (*ignored, UpstreamClientError)
    return CircuitBreakerManager(dataclasses.replace(base, ignored_exceptions=ignored), clock=clock)


async def call_upstream(
    breakers: CircuitBreakerManager,
    endpoint: str,
    fn: Callable[[], Awaitable[T]],
    retry_config: RetryConfig | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
) -> T:
    """Call ``fn`` through the endpoint breaker, retrying transient failures.

    Retry wraps the breaker: every attempt is counted by the breaker, and an
    open circuit ends the retry loop at once.

    Args:
        breakers: Shared breaker manager.
        endpoint: Breaker key.
        fn: Zero-argument coroutine function performing the request.
        retry_config: Backoff settings; defaults to ``RetryConfig()``.
        on_retry: Callback invoked before each backoff sleep.

    Returns:
        Whatever ``fn`` returns.
    """
    cfg = retry_config or RetryConfig()
    return await retry(
        lambda: breakers.execute(endpoint, fn),
        max_attempts=cfg.max_attempts,
        delay=cfg.delay,
        backoff=cfg.backoff,
        max_delay=cfg.max_delay,
        should_retry=lambda error, _attempt: is_retryable(error),
        on_retry=on_retry,
    )
