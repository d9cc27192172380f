"""Tests for the concurrency limiter and batch helpers."""

from __future__ import annotations

import asyncio

import pytest

from build_orchestrator.concurrency import (
    ConcurrencyLimiter,
    batch_process,
    chunk,
    parallel_limit,
)


class TestConcurrencyLimiter:
    """Tests for ConcurrencyLimiter."""

    def test_rejects_non_positive_limit(self) -> None:
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    async def test_acquire_release_counts(self) -> None:
        limiter = ConcurrencyLimiter(2)
        await limiter.acquire()
        assert limiter.in_flight == 1
        assert limiter.available == 1
        limiter.release()
        assert limiter.in_flight == 0

    def test_release_without_acquire_raises(self) -> None:
        with pytest.raises(RuntimeError):
            ConcurrencyLimiter(1).release()

    async def test_excess_waiters_queue(self) -> None:
        limiter = ConcurrencyLimiter(1)
        await limiter.acquire()
        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        assert not waiter.done()

        limiter.release()
        await asyncio.wait_for(waiter, timeout=1)
        assert limiter.in_flight == 1

    async def test_context_manager_releases_on_error(self) -> None:
        limiter = ConcurrencyLimiter(1)
        with pytest.raises(KeyError):
            async with limiter:
                raise KeyError("x")
        assert limiter.in_flight == 0


class TestParallelLimit:
    """Tests for parallel_limit()."""

    async def test_never_exceeds_limit(self) -> None:
        in_flight = 0
        peak = 0

        async def work(item: int, index: int) -> int:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return item * 2

        results = await parallel_limit(list(range(10)), work, 3)

        assert results == [i * 2 for i in range(10)]
        assert peak <= 3

    async def test_passes_index(self) -> None:
        async def work(item: str, index: int) -> str:
            return f"{index}:{item}"

        assert await parallel_limit(["a", "b"], work, 2) == ["0:a", "1:b"]

    async def test_failure_raises_after_all_items_settle(self) -> None:
        finished: list[int] = []

        async def work(item: int, index: int) -> int:
            if item == 1:
                raise ValueError("item 1")
            await asyncio.sleep(0.01)
            finished.append(item)
            return item

        with pytest.raises(ValueError, match="item 1"):
            await parallel_limit([0, 1, 2, 3], work, 2)

        assert sorted(finished) == [0, 2, 3]


class TestBatchProcess:
    """Tests for chunk() and batch_process()."""

    def test_chunk(self) -> None:
        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        with pytest.raises(ValueError):
            chunk([1], 0)

    async def test_results_flattened_in_order(self) -> None:
        async def double(batch: list[int]) -> list[int]:
            return [x * 2 for x in batch]

        assert await batch_process([1, 2, 3, 4, 5], double, 2, concurrency=2) == [2, 4, 6, 8, 10]

    async def test_partial_results_reported_before_failure(self) -> None:
        completed: list[list[int]] = []
        errors: list[list[int]] = []

        async def process(batch: list[int]) -> list[int]:
            if 3 in batch:
                raise RuntimeError("bad batch")
            await asyncio.sleep(0.01)
            return batch

        with pytest.raises(RuntimeError, match="bad batch"):
            await batch_process(
                [1, 2, 3, 4, 5, 6],
                process,
                2,
                concurrency=3,
                on_batch_complete=lambda batch, _res: completed.append(batch),
                on_error=lambda batch, _exc: errors.append(batch),
            )

        assert sorted(completed) == [[1, 2], [5, 6]]
        assert errors == [[3, 4]]
