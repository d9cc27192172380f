"""Circuit breaker configuration for the build orchestrator.

Breakers are keyed by upstream endpoint name ("buildQueue", "builds",
"agents", ...). Every breaker created by one manager shares a single
configuration object.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CircuitState(Enum):
    """Possible states for a circuit breaker."""

    CLOSED = "closed"  # Normal operation - calls allowed
    OPEN = "open"  # Circuit tripped - calls rejected
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for endpoint circuit breakers.

    Attributes:
        failure_threshold: Consecutive failures before opening the circuit.
        reset_timeout_seconds: Time since the last failure before a trial call.
        success_threshold: Consecutive HALF_OPEN successes needed to close.
        monitoring_period_seconds: Reporting window, surfaced in stats only.
        ignored_exceptions: Exception types that pass through without being
            counted as either a success or a failure.
    """

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0  # 1 minute
    success_threshold: int = 2
    monitoring_period_seconds: float = 600.0  # 10 minutes
    ignored_exceptions: tuple[type[BaseException], ...] = ()


# Default configuration instance for convenience
DEFAULT_CONFIG = CircuitBreakerConfig()
