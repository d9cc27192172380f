"""Exceptions raised by the upstream queue client.

Status codes decide retry behaviour: 4xx responses are the caller's fault
and are never retried, while 5xx, 429 and transport failures are treated as
transient.
"""

from __future__ import annotations


class UpstreamError(Exception):
    """Base error for upstream HTTP failures.

    Attributes:
        status_code: HTTP status code, or None when no response was received.
        message: A human-readable error description.
    """

    def __init__(self, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f"HTTP {status_code}: {message}")


class UpstreamClientError(UpstreamError):
    """Raised for 4xx responses other than 429."""


class BuildNotFoundError(UpstreamClientError):
    """Raised when the server returns a 404 Not Found response."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(status_code=404, message=message)


class AccessDeniedError(UpstreamClientError):
    """Raised when the server returns a 403 Forbidden response."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(status_code=403, message=message)


class UpstreamTransientError(UpstreamError):
    """Raised for 5xx, 429 and transport-level failures."""
