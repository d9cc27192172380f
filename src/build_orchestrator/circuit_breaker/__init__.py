"""Circuit breakers for upstream endpoints.

Implements the circuit breaker pattern per endpoint to stop hammering an
upstream API that keeps failing.

The circuit breaker has three states:
- CLOSED: Normal operation, failures are counted
- OPEN: Circuit tripped, calls immediately fail
- HALF_OPEN: Testing recovery, trial calls allowed
"""

from .breaker import CircuitBreaker
from .exceptions import CircuitBreakerError, CircuitOpenError
from .registry import CircuitBreakerManager

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerManager",
    "CircuitOpenError",
]
