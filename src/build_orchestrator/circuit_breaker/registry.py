"""Circuit breaker manager holding one breaker per upstream endpoint.

Breakers are created on first use and kept for the lifetime of the
manager. The endpoint set is small and fixed, so the map is never pruned.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..circuit_breaker_config import CircuitBreakerConfig, CircuitState, DEFAULT_CONFIG
from .breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreakerManager:
    """Registry of endpoint circuit breakers.

    One manager is shared by every component that talks to the same
    upstream server, so they observe the same failure-isolation state.

    Usage:
        breakers = CircuitBreakerManager(config)
        queued = await breakers.execute("buildQueue", submit)

        # Recovery tooling
        breakers.reset("buildQueue")
        breakers.reset_all()
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Configuration applied to every breaker it creates.
            clock: Monotonic time source handed to each breaker.
        """
        self._config = config or DEFAULT_CONFIG
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @property
    def config(self) -> CircuitBreakerConfig:
        """Return the shared breaker configuration."""
        return self._config

    def get_breaker(self, endpoint: str) -> CircuitBreaker:
        """Get or create the breaker for ``endpoint``."""
        breaker = self._breakers.get(endpoint)
        if breaker is None:
            breaker = CircuitBreaker(endpoint, self._config, clock=self._clock)
            self._breakers[endpoint] = breaker
            logger.debug("Created circuit breaker for endpoint %s", endpoint)
        return breaker

    async def execute(self, endpoint: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker for ``endpoint``."""
        return await self.get_breaker(endpoint).execute(fn)

    def endpoints(self) -> list[str]:
        """Return the endpoint keys that currently have a breaker."""
        return list(self._breakers)

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        """Return stats for every breaker keyed by endpoint."""
        return {endpoint: breaker.get_stats() for endpoint, breaker in self._breakers.items()}

    def get_open_circuits(self) -> list[CircuitBreaker]:
        """Return breakers that are OPEN or HALF_OPEN."""
        return [b for b in self._breakers.values() if b.state != CircuitState.CLOSED]

    def reset(self, endpoint: str) -> None:
        """Reset the breaker for ``endpoint``. Unknown endpoints are ignored."""
        breaker = self._breakers.get(endpoint)
        if breaker is not None:
            breaker.reset()

    def reset_all(self) -> int:
        """Reset every breaker to CLOSED.

        Returns:
            Number of breakers that were not CLOSED before the reset.
        """
        reset_count = 0
        for breaker in self._breakers.values():
            if breaker.state != CircuitState.CLOSED:
                reset_count += 1
            breaker.reset()

        logger.info("Reset %d circuits via reset_all()", reset_count)
        return reset_count
