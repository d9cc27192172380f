"""Tests for retry with exponential backoff."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from build_orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    CircuitOpenError,
)
from build_orchestrator.circuit_breaker_config import CircuitBreakerConfig
from build_orchestrator.client.errors import (
    AccessDeniedError,
    BuildNotFoundError,
    UpstreamClientError,
    UpstreamTransientError,
)
from build_orchestrator.config import RetryConfig
from build_orchestrator.errors import ValidationError
from build_orchestrator.resilience import call_upstream
from build_orchestrator.retry import backoff_delay, is_retryable, retry


class TestIsRetryable:
    """Tests for the retry predicate."""

    @pytest.mark.parametrize(
        "error",
        [
            ValidationError("bad"),
            UpstreamClientError(400, "bad request"),
            BuildNotFoundError(),
            AccessDeniedError(),
            CircuitOpenError("builds", 10.0),
            RuntimeError("unknown"),
            ValueError("Invalid isoformat string"),
        ],
    )
    def test_final_errors(self, error: Exception) -> None:
        assert is_retryable(error) is False

    @pytest.mark.parametrize(
        "error",
        [
            UpstreamTransientError(503, "unavailable"),
            UpstreamTransientError(429, "slow down"),
            UpstreamTransientError(None, "connection reset"),
            httpx.ConnectError("refused"),
        ],
    )
    def test_transient_errors(self, error: Exception) -> None:
        assert is_retryable(error) is True

    def test_http_status_error_4xx_except_429(self) -> None:
        request = httpx.Request("GET", "http://test")

        def status_error(code: int) -> httpx.HTTPStatusError:
            return httpx.HTTPStatusError(
                "err", request=request, response=httpx.Response(code, request=request)
            )

        assert is_retryable(status_error(404)) is False
        assert is_retryable(status_error(429)) is True
        assert is_retryable(status_error(502)) is True


class TestBackoffDelay:
    def test_grows_geometrically(self) -> None:
        assert backoff_delay(1, 1.0, 2.0, 10.0) == 1.0
        assert backoff_delay(2, 1.0, 2.0, 10.0) == 2.0
        assert backoff_delay(3, 1.0, 2.0, 10.0) == 4.0

    def test_capped_at_max_delay(self) -> None:
        assert backoff_delay(10, 1.0, 2.0, 10.0) == 10.0


class TestRetry:
    """Tests for retry()."""

    async def test_returns_first_success(self) -> None:
        fn = AsyncMock(return_value="ok")
        assert await retry(fn) == "ok"
        fn.assert_awaited_once()

    async def test_retries_until_success(self) -> None:
        fn = AsyncMock(side_effect=[RuntimeError("1"), RuntimeError("2"), "ok"])
        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            assert await retry(fn, max_attempts=3) == "ok"
        assert fn.await_count == 3

    async def test_reraises_last_error_unchanged(self) -> None:
        last = RuntimeError("last")
        fn = AsyncMock(side_effect=[RuntimeError("first"), last])
        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RuntimeError) as exc_info:
                await retry(fn, max_attempts=2)
        assert exc_info.value is last

    async def test_should_retry_false_calls_once(self) -> None:
        fn = AsyncMock(side_effect=RuntimeError("nope"))
        with pytest.raises(RuntimeError):
            await retry(fn, max_attempts=3, should_retry=lambda *_: False)
        fn.assert_awaited_once()

    async def test_on_retry_called_before_each_sleep(self) -> None:
        calls: list[tuple[str, int]] = []
        fn = AsyncMock(side_effect=[RuntimeError("a"), RuntimeError("b"), "ok"])
        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await retry(
                fn,
                max_attempts=3,
                delay=1.0,
                backoff=3.0,
                on_retry=lambda e, n: calls.append((str(e), n)),
            )
        assert calls == [("a", 1), ("b", 2)]
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 3.0]

    async def test_sleeps_never_exceed_max_delay(self) -> None:
        fn = AsyncMock(side_effect=[RuntimeError()] * 4 + ["ok"])
        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await retry(fn, max_attempts=5, delay=1.0, backoff=10.0, max_delay=5.0)
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 5.0, 5.0, 5.0]

    async def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            await retry(AsyncMock(), max_attempts=0)

    async def test_backoff_timing(self) -> None:
        """With delay=50ms and backoff=2 the gaps are about 50ms then 100ms."""
        stamps: list[float] = []

        async def flaky() -> str:
            stamps.append(time.monotonic())
            if len(stamps) < 3:
                raise RuntimeError("transient")
            return "ok"

        assert await retry(flaky, max_attempts=3, delay=0.05, backoff=2.0, max_delay=1.0) == "ok"
        first_gap = stamps[1] - stamps[0]
        second_gap = stamps[2] - stamps[1]
        assert 0.045 <= first_gap < 0.5
        assert 0.095 <= second_gap < 0.6


class TestCallUpstream:
    """Retry wrapping the circuit breaker."""

    async def test_client_error_not_retried_and_not_counted(self) -> None:
        breakers = CircuitBreakerManager(
            CircuitBreakerConfig(failure_threshold=1, ignored_exceptions=(UpstreamClientError,))
        )
        fn = AsyncMock(side_effect=UpstreamClientError(400, "bad"))

        with pytest.raises(UpstreamClientError):
            await call_upstream(breakers, "buildQueue", fn, RetryConfig(max_attempts=4))

        fn.assert_awaited_once()
        assert breakers.get_breaker("buildQueue").is_closed

    async def test_open_circuit_ends_retry_loop(self) -> None:
        breakers = CircuitBreakerManager(CircuitBreakerConfig(failure_threshold=2))
        fn = AsyncMock(side_effect=UpstreamTransientError(503, "down"))

        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(CircuitOpenError):
                await call_upstream(breakers, "buildQueue", fn, RetryConfig(max_attempts=5))

        # Two failures open the circuit; the third attempt fails fast
        assert fn.await_count == 2

    async def test_transient_error_retried_to_success(self) -> None:
        breakers = CircuitBreakerManager()
        fn = AsyncMock(side_effect=[UpstreamTransientError(502, "bad gateway"), "queued"])
        retries: list[int] = []

        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            result = await call_upstream(
                breakers, "buildQueue", fn, on_retry=lambda _e, n: retries.append(n)
            )

        assert result == "queued"
        assert retries == [1]
        assert breakers.get_breaker("buildQueue").failure_count == 0


class TestBreakerWrapsRetry:
    """The circuit breaker around a whole retry loop."""

    async def test_exhausted_retry_counts_as_one_failure(self) -> None:
        breaker = CircuitBreaker("buildQueue", CircuitBreakerConfig(failure_threshold=2))
        fn = AsyncMock(side_effect=UpstreamTransientError(503, "down"))

        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(UpstreamTransientError):
                await breaker.execute(lambda: retry(fn, max_attempts=3))

        assert fn.await_count == 3
        assert breaker.failure_count == 1
        assert breaker.is_closed

    async def test_opens_after_threshold_of_exhausted_loops(self) -> None:
        breaker = CircuitBreaker("buildQueue", CircuitBreakerConfig(failure_threshold=2))
        fn = AsyncMock(side_effect=UpstreamTransientError(503, "down"))

        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            for _ in range(2):
                with pytest.raises(UpstreamTransientError):
                    await breaker.execute(lambda: retry(fn, max_attempts=3))
            assert breaker.is_open

            with pytest.raises(CircuitOpenError):
                await breaker.execute(lambda: retry(fn, max_attempts=3))

        assert fn.await_count == 6

    async def test_recovery_inside_loop_is_a_success(self) -> None:
        breaker = CircuitBreaker("buildQueue", CircuitBreakerConfig(failure_threshold=1))
        fn = AsyncMock(side_effect=[UpstreamTransientError(503, "down"), "queued"])

        with patch("build_orchestrator.retry.asyncio.sleep", new_callable=AsyncMock):
            result = await breaker.execute(lambda: retry(fn, max_attempts=3))

        assert result == "queued"
        assert breaker.failure_count == 0
        assert breaker.is_closed
