"""Event emitter and typed event payloads.

Listeners register callbacks per event name, or consume every event through
an async iterator. A callback that raises is logged and the remaining
callbacks still run, so listener bugs never break a poll loop or a
submission.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .models import BuildStatus, QueuedBuild

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    """Names of events emitted by the orchestrator and the progress monitor."""

    PROGRESS = "progress"
    QUEUED = "queued"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    STALLED = "stalled"
    STAGE_CHANGED = "stageChanged"
    STAGE_COMPLETED = "stageCompleted"
    STOPPED = "stopped"
    ERROR = "error"
    RETRY = "retry"
    BATCH_PARTIAL = "batch:partial"


class StopReason(str, Enum):
    """Why a tracking session ended without a terminal build state."""

    MANUAL = "manual"
    MAX_RETRIES_EXCEEDED = "maxRetriesExceeded"
    MAX_DURATION_EXCEEDED = "maxDurationExceeded"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressUpdate:
    """A polled status plus the metrics derived from it."""

    build_id: str
    status: BuildStatus
    velocity: float | None = None  # percent per second
    estimated_time_remaining: float | None = None  # seconds
    estimated_total_seconds: float | None = None
    is_overdue: bool = False
    overdue_seconds: float | None = None
    stage_duration: float | None = None
    stage_progress: float | None = None

    @property
    def state(self) -> str:
        return self.status.state

    @property
    def percentage_complete(self) -> float:
        return self.status.percentage_complete


@dataclass(frozen=True)
class QueuedEvent:
    build_id: str
    queue_position: int | None = None
    estimated_start_time: datetime | None = None


@dataclass(frozen=True)
class StartedEvent:
    build_id: str
    start_date: datetime | None = None


@dataclass(frozen=True)
class CompletedEvent:
    build_id: str
    status: str | None = None
    elapsed_seconds: float | None = None
    finish_date: datetime | None = None


@dataclass(frozen=True)
class FailedEvent:
    build_id: str
    status: str | None = None
    status_text: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class CanceledEvent:
    build_id: str
    canceled_by: str | None = None
    canceled_date: datetime | None = None
    comment: str | None = None


@dataclass(frozen=True)
class StalledEvent:
    build_id: str
    percentage_complete: float
    time_since_progress: float  # seconds


@dataclass(frozen=True)
class StageChangedEvent:
    build_id: str
    stage: str


@dataclass(frozen=True)
class StageMetrics:
    """Metrics for a stage that just finished."""

    build_id: str
    stage_name: str
    duration: float  # seconds
    percentage_of_build: float
    start_progress: float
    end_progress: float


@dataclass(frozen=True)
class StoppedEvent:
    build_id: str
    reason: StopReason


@dataclass(frozen=True)
class ErrorEvent:
    """An error delivered as an event instead of being raised."""

    error: BaseException
    build_id: str | None = None
    build_type_id: str | None = None

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass(frozen=True)
class RetryEvent:
    attempt: int
    max_attempts: int
    error: BaseException
    build_id: str | None = None
    build_type_id: str | None = None


@dataclass(frozen=True)
class BatchFailure:
    """A failed submission inside a batch, by request index."""

    index: int
    error: BaseException


@dataclass(frozen=True)
class BatchPartialEvent:
    successful: list[QueuedBuild] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

Listener = Callable[[Any], None]


def _key(event: EventName | str) -> str:
    return event.value if isinstance(event, EventName) else event


class EventSubscription:
    """Async iterator over ``(event, payload)`` pairs."""

    def __init__(self, queue: asyncio.Queue[tuple[str, Any] | None], emitter: EventEmitter) -> None:
        self._queue = queue
        self._emitter = emitter

    def __aiter__(self) -> AsyncIterator[tuple[str, Any]]:
        return self

    async def __anext__(self) -> tuple[str, Any]:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Stop receiving events."""
        self._emitter._unsubscribe(self._queue)


class EventEmitter:
    """Synchronous fan-out of named events.

    Usage:
        emitter = EventEmitter()
        emitter.on(EventName.COMPLETED, lambda e: print(e.build_id))

        async for name, payload in emitter.subscribe():
            ...
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._queues: set[asyncio.Queue[tuple[str, Any] | None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        """Return True once :meth:`close` has been called."""
        return self._closed

    def on(self, event: EventName | str, listener: Listener) -> Listener:
        """Register ``listener`` for ``event`` and return it."""
        self._listeners.setdefault(_key(event), []).append(listener)
        return listener

    def off(self, event: EventName | str, listener: Listener) -> bool:
        """Remove a listener.

        Returns:
            True if the listener was registered, False otherwise.
        """
        listeners = self._listeners.get(_key(event), [])
        try:
            listeners.remove(listener)
            return True
        except ValueError:
            return False

    def listener_count(self, event: EventName | str) -> int:
        """Return the number of callbacks registered for ``event``."""
        return len(self._listeners.get(_key(event), []))

    def subscribe(self) -> EventSubscription:
        """Return an async iterator receiving every subsequent event.

        The iterator ends when the emitter is closed.
        """
        queue: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        else:
            self._queues.add(queue)
        return EventSubscription(queue, self)

    def emit(self, event: EventName | str, payload: Any) -> None:
        """Dispatch ``payload`` to every listener of ``event``.

        Listener exceptions are logged and do not stop dispatch. Events
        emitted after :meth:`close` are dropped.
        """
        if self._closed:
            return
        name = _key(event)
        # Iterate over a copy so listeners may unregister themselves
        for listener in list(self._listeners.get(name, [])):
            try:
                listener(payload)
            except Exception as e:
                logger.error(
                    "Listener %s for %s raised exception: %s",
                    listener,
                    name,
                    e,
                    exc_info=True,
                )

        for queue in self._queues:
            queue.put_nowait((name, payload))

    def close(self) -> None:
        """End all subscriptions and stop dispatching."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)
        self._queues.clear()

    def _unsubscribe(self, queue: asyncio.Queue[tuple[str, Any] | None]) -> None:
        if queue in self._queues:
            self._queues.discard(queue)
            queue.put_nowait(None)
