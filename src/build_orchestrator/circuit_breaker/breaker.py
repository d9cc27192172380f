"""Endpoint-level circuit breaker implementation.

Stops calling an upstream endpoint that keeps failing, then lets trial
calls through once the reset timeout has elapsed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..circuit_breaker_config import (
    CircuitBreakerConfig,
    CircuitState,
    DEFAULT_CONFIG,
)
from .exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Circuit breaker guarding a single upstream endpoint.

    Usage:
        breaker = CircuitBreaker("buildQueue", config)
        build = await breaker.execute(lambda: client.add_build_to_queue(payload))

    While OPEN, ``execute`` raises :class:`CircuitOpenError` without invoking
    the protected call until ``reset_timeout_seconds`` have passed since the
    last failure. The breaker then moves to HALF_OPEN, where
    ``success_threshold`` consecutive successes close it again and any single
    failure reopens it.

    Attributes:
        identifier: Endpoint key this breaker protects.
        config: Circuit breaker configuration.
        state: Current circuit state.
    """

    def __init__(
        self,
        identifier: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the circuit breaker.

        Args:
            identifier: Endpoint key for this circuit.
            config: Configuration settings. Uses DEFAULT_CONFIG if None.
            clock: Monotonic time source in seconds.
        """
        self._identifier = identifier
        self._config = config or DEFAULT_CONFIG
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None

    @property
    def identifier(self) -> str:
        """Return the circuit identifier."""
        return self._identifier

    @property
    def config(self) -> CircuitBreakerConfig:
        """Return the circuit configuration."""
        return self._config

    @property
    def state(self) -> CircuitState:
        """Return the current circuit state."""
        return self._state

    @property
    def failure_count(self) -> int:
        """Return the current failure count."""
        return self._failure_count

    @property
    def is_open(self) -> bool:
        """Check if circuit is currently open (rejecting calls)."""
        return self._state == CircuitState.OPEN

    @property
    def is_closed(self) -> bool:
        """Check if circuit is currently closed (normal operation)."""
        return self._state == CircuitState.CLOSED

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under circuit breaker protection.

        Args:
            fn: Zero-argument callable returning an awaitable.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            CircuitOpenError: If the circuit is open and the reset timeout
                has not elapsed. ``fn`` is not called.
            Exception: Any exception raised by ``fn``, unchanged.
        """
        if self._state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition_to(CircuitState.HALF_OPEN)
            else:
                raise CircuitOpenError(self._identifier, self.get_time_until_retry())

        try:
            result = await fn()
        except self._config.ignored_exceptions:
            raise
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def get_time_until_retry(self) -> float:
        """Get seconds until the circuit can attempt recovery."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0

        elapsed = self._clock() - self._last_failure_time
        return max(0.0, self._config.reset_timeout_seconds - elapsed)

    def get_stats(self) -> dict[str, Any]:
        """Return a snapshot of the circuit counters."""
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
            "monitoring_period_seconds": self._config.monitoring_period_seconds,
        }

    def reset(self) -> None:
        """Manually reset the circuit to CLOSED.

        Used by recovery tooling after an upstream outage is resolved.
        """
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None

    def _should_attempt_reset(self) -> bool:
        if self._last_failure_time is None:
            return True
        elapsed = self._clock() - self._last_failure_time
        return elapsed >= self._config.reset_timeout_seconds

    def _on_success(self) -> None:
        self._failure_count = 0

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            # Failure in half-open means back to open
            self._transition_to(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self._config.failure_threshold
        ):
            self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0

        if old_state == new_state:
            return

        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit %s OPENED (%s -> %s, failures=%d)",
                self._identifier,
                old_state.value,
                new_state.value,
                self._failure_count,
            )
        else:
            logger.info(
                "Circuit %s transitioned %s -> %s (successes=%d)",
                self._identifier,
                old_state.value,
                new_state.value,
                self._success_count,
            )
