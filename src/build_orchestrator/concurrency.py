"""Bounded concurrency helpers.

A counting semaphore caps how many upstream calls are in flight at once.
Excess work waits for a permit instead of being fired immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from types import TracebackType
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ConcurrencyLimiter:
    """Counting semaphore with in-flight telemetry.

    Usage:
        limiter = ConcurrencyLimiter(5)
        async with limiter:
            await client.get_build(build_id)
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def limit(self) -> int:
        """Return the maximum number of concurrent holders."""
        return self._limit

    @property
    def in_flight(self) -> int:
        """Return the number of permits currently held."""
        return self._in_flight

    @property
    def available(self) -> int:
        """Return the number of free permits."""
        return self._limit - self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Return the highest number of permits held at once."""
        return self._peak_in_flight

    async def acquire(self) -> None:
        """Wait for a permit."""
        await self._semaphore.acquire()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

    def release(self) -> None:
        """Return a permit, waking the next waiter if any."""
        if self._in_flight == 0:
            raise RuntimeError("release() called more times than acquire()")
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> ConcurrencyLimiter:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


async def parallel_limit(
    items: Sequence[T],
    fn: Callable[[T, int], Awaitable[R]],
    limit: int,
) -> list[R]:
    """Run ``fn(item, index)`` over every item with at most ``limit`` in flight.

    Every item is dispatched even if an earlier one fails. Once all of them
    have settled, the first failure (in completion order) is re-raised.

    Args:
        items: Items to process.
        fn: Coroutine function called with each item and its index.
        limit: Maximum number of concurrent calls.

    Returns:
        Results in item order.

    Raises:
        Exception: The first exception raised by ``fn``.
    """
    limiter = ConcurrencyLimiter(limit)
    failures: list[BaseException] = []

    async def _run(item: T, index: int) -> R:
        async with limiter:
            try:
                return await fn(item, index)
            except Exception as exc:
                failures.append(exc)
                raise

    results = await asyncio.gather(
        *[_run(item, index) for index, item in enumerate(items)],
        return_exceptions=True,
    )

    if failures:
        raise failures[0]

    return list(results)  # type: ignore[arg-type]


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


async def batch_process(
    items: Sequence[T],
    processor: Callable[[list[T]], Awaitable[list[R]]],
    batch_size: int,
    *,
    concurrency: int = 1,
    on_batch_complete: Callable[[list[T], list[R]], None] | None = None,
    on_error: Callable[[list[T], BaseException], None] | None = None,
) -> list[R]:
    """Process ``items`` in fixed-size batches.

    Batches run through :func:`parallel_limit`. A failing batch makes the
    whole call raise, but batches already dispatched still finish, and
    ``on_batch_complete`` is called for each one that succeeds.

    Args:
        items: Items to process.
        processor: Coroutine function handling one batch.
        batch_size: Maximum items per batch.
        concurrency: Maximum batches in flight.
        on_batch_complete: Callback ``(batch, results)`` per successful batch.
        on_error: Callback ``(batch, error)`` per failed batch.

    Returns:
        Results of all batches, in batch order.
    """
    batches = chunk(items, batch_size)

    async def _process(batch: list[T], index: int) -> list[R]:
        try:
            batch_results = await processor(batch)
        except Exception as exc:
            logger.warning("Batch %d of %d failed: %s", index + 1, len(batches), exc)
            if on_error is not None:
                on_error(batch, exc)
            raise

        if on_batch_complete is not None:
            on_batch_complete(batch, batch_results)
        return batch_results

    per_batch = await parallel_limit(batches, _process, concurrency)
    return [result for batch_results in per_batch for result in batch_results]
