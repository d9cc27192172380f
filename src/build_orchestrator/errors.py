"""Local errors raised by the orchestrator before or instead of upstream calls."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base error for build orchestrator failures."""


class ValidationError(OrchestratorError):
    """Raised for invalid input. Never retried."""


class QueueCapacityError(OrchestratorError):
    """Raised when a build configuration has no free capacity for a submission."""


class BuildNotInQueueError(OrchestratorError):
    """Raised when a build is neither queued nor running/finished."""

    def __init__(self, build_id: str) -> None:
        self.build_id = build_id
        super().__init__(f"Build {build_id} not found in queue")


class BuildBlockedError(OrchestratorError):
    """Raised when a queued build cannot be reordered because of dependencies."""

    def __init__(self, build_id: str, blocked_by: list[str]) -> None:
        self.build_id = build_id
        self.blocked_by = blocked_by
        super().__init__(f"Build {build_id} is blocked by builds {', '.join(blocked_by)}")


class QueueOrderError(OrchestratorError):
    """Raised when a build cannot be moved within the queue."""
