"""Build Orchestrator.

Client-side orchestration for an upstream CI build queue: resilient
submission, queue ordering and polling progress tracking.
"""

from __future__ import annotations

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitBreakerManager,
    CircuitOpenError,
)
from .circuit_breaker_config import CircuitBreakerConfig, CircuitState
from .client import (
    AccessDeniedError,
    BuildNotFoundError,
    QueueClient,
    UpstreamClientError,
    UpstreamError,
    UpstreamTransientError,
)
from .concurrency import ConcurrencyLimiter, batch_process, parallel_limit
from .config import ProgressOptions, QueueConfig, RetryConfig, Settings, load_settings
from .errors import (
    BuildBlockedError,
    BuildNotInQueueError,
    OrchestratorError,
    QueueCapacityError,
    QueueOrderError,
    ValidationError,
)
from .events import EventEmitter, EventName, StopReason
from .models import (
    BuildDependency,
    BuildStatus,
    QueueBuildRequest,
    QueuedBuild,
    QueueLimitations,
    QueuePosition,
)
from .progress_monitor import BuildProgressMonitor, TrackingSession
from .queue_orchestrator import BuildQueueOrchestrator
from .resilience import call_upstream, create_breakers
from .retry import is_retryable, retry
from .status import BuildStatusQuery, BuildStatusService

__all__ = [
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerManager",
    "CircuitOpenError",
    "CircuitState",
    "call_upstream",
    "create_breakers",
    "is_retryable",
    "retry",
    # Concurrency
    "ConcurrencyLimiter",
    "batch_process",
    "parallel_limit",
    # Client
    "AccessDeniedError",
    "BuildNotFoundError",
    "QueueClient",
    "UpstreamClientError",
    "UpstreamError",
    "UpstreamTransientError",
    # Orchestration
    "BuildQueueOrchestrator",
    "BuildProgressMonitor",
    "BuildStatusQuery",
    "BuildStatusService",
    "TrackingSession",
    # Models and events
    "BuildDependency",
    "BuildStatus",
    "EventEmitter",
    "EventName",
    "QueueBuildRequest",
    "QueuedBuild",
    "QueueLimitations",
    "QueuePosition",
    "StopReason",
    # Configuration
    "ProgressOptions",
    "QueueConfig",
    "RetryConfig",
    "Settings",
    "load_settings",
    # Errors
    "BuildBlockedError",
    "BuildNotInQueueError",
    "OrchestratorError",
    "QueueCapacityError",
    "QueueOrderError",
    "ValidationError",
]
