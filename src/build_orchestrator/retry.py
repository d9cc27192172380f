"""Retry with exponential backoff for async upstream calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from .client.errors import UpstreamTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Decide whether an upstream failure is worth another attempt.

    Only transient upstream failures are retried: 5xx and 429 responses and
    transport errors. Everything else is final, including local validation
    errors, other 4xx responses, open circuits and unexpected exceptions.

    Args:
        error: The exception raised by the failed attempt.

    Returns:
        True if the call should be attempted again.
    """
    if isinstance(error, (UpstreamTransientError, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    return False


def backoff_delay(attempt: int, delay: float, backoff: float, max_delay: float) -> float:
    """Return the sleep before the attempt following ``attempt`` (1-based)."""
    return min(delay * backoff ** (attempt - 1), max_delay)


async def retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 10.0,
    should_retry: Callable[[BaseException, int], bool] | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds or the attempt budget runs out.

    The error from the final attempt (or from an attempt that
    ``should_retry`` rejects) is re-raised unchanged.

    Args:
        fn: Zero-argument callable returning an awaitable.
        max_attempts: Total number of attempts, including the first.
        delay: Sleep in seconds before the second attempt.
        backoff: Multiplier applied to the delay after each failure.
        max_delay: Upper bound for any single sleep.
        should_retry: Predicate ``(error, attempt) -> bool``; defaults to
            retrying every exception.
        on_retry: Callback ``(error, attempt)`` invoked before each sleep.

    Returns:
        Whatever ``fn`` returns on its first successful attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_attempts:
                raise
            if should_retry is not None and not should_retry(exc, attempt):
                raise

            if on_retry is not None:
                on_retry(exc, attempt)

            wait = backoff_delay(attempt, delay, backoff, max_delay)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                max_attempts,
                exc,
                wait,
            )
            await asyncio.sleep(wait)
            attempt += 1
