"""Async Python client for the upstream build queue REST API."""

from .client import QueueClient
from .errors import (
    AccessDeniedError,
    BuildNotFoundError,
    UpstreamClientError,
    UpstreamError,
    UpstreamTransientError,
)

__all__ = [
    "AccessDeniedError",
    "BuildNotFoundError",
    "QueueClient",
    "UpstreamClientError",
    "UpstreamError",
    "UpstreamTransientError",
]
