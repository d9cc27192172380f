"""Polling progress monitor for queued and running builds.

Each tracked build owns one asyncio task that polls the status provider,
derives progress metrics and emits events until the build reaches a
terminal state, the error budget runs out, ``max_duration`` elapses or the
caller stops it.

Polls of one build never overlap: the loop awaits each poll before sleeping,
and ``poll_once`` on a tracked build takes the same per-session lock. Stopping
a session wakes the loop through its cancel event but leaves an in-flight
request alone; the late result is dropped because the session is no longer
the one registered for the build.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import ProgressOptions
from .events import (
    CanceledEvent,
    CompletedEvent,
    ErrorEvent,
    EventEmitter,
    EventName,
    EventSubscription,
    FailedEvent,
    Listener,
    ProgressUpdate,
    QueuedEvent,
    StageChangedEvent,
    StageMetrics,
    StalledEvent,
    StartedEvent,
    StopReason,
    StoppedEvent,
)
from .models import ACTIVE_STATES, BuildStatus
from .status import BuildStatusQuery, StatusProvider

logger = logging.getLogger(__name__)


@dataclass
class TrackingState:
    """Mutable state of one tracking session."""

    build_id: str
    options: ProgressOptions
    emitter: EventEmitter
    start_time: float
    started_at: datetime
    ephemeral: bool = False
    build_type_id: str | None = None
    task: asyncio.Task[None] | None = None
    duration_handle: asyncio.TimerHandle | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_update: BuildStatus | None = None
    last_progress: float | None = None
    last_progress_time: float | None = None
    current_stage: str | None = None
    stage_start_time: float | None = None
    stage_start_progress: float | None = None
    poll_count: int = 0
    error_count: int = 0
    stop_reason: StopReason | None = None


@dataclass(frozen=True)
class TrackingInfo:
    """Read-only view of an active session."""

    build_id: str
    is_tracking: bool
    last_update: BuildStatus | None
    poll_count: int
    error_count: int
    started_at: datetime
    current_stage: str | None


class TrackingSession:
    """Handle returned by :meth:`BuildProgressMonitor.track_build_progress`.

    Register callbacks with :meth:`on` or iterate over :meth:`events`. Both
    must be set up before the first ``await`` after starting the session to
    see the first poll.
    """

    def __init__(self, state: TrackingState) -> None:
        self._state = state

    @property
    def build_id(self) -> str:
        return self._state.build_id

    @property
    def is_done(self) -> bool:
        """Return True once the session has ended for any reason."""
        return self._state.done.is_set()

    @property
    def stop_reason(self) -> StopReason | None:
        """Return why the session stopped, or None after a terminal state."""
        return self._state.stop_reason

    def on(self, event: EventName | str, listener: Listener) -> Listener:
        """Register ``listener`` for a session event."""
        return self._state.emitter.on(event, listener)

    def off(self, event: EventName | str, listener: Listener) -> bool:
        return self._state.emitter.off(event, listener)

    def events(self) -> EventSubscription:
        """Return an async iterator of ``(event, payload)`` pairs.

        The iterator ends when the session ends.
        """
        return self._state.emitter.subscribe()

    async def wait(self, timeout: float | None = None) -> None:
        """Wait until the session ends.

        Raises:
            TimeoutError: If ``timeout`` elapses first.
        """
        await asyncio.wait_for(self._state.done.wait(), timeout=timeout)


class BuildProgressMonitor:
    """Tracks build progress by polling a status provider.

    Usage:
        monitor = BuildProgressMonitor(BuildStatusService(client, breakers))
        session = monitor.track_build_progress(
            "42", ProgressOptions(calculate_velocity=True, track_stages=True)
        )
        session.on(EventName.PROGRESS, lambda u: print(u.percentage_complete))
        await session.wait()

    Args:
        status_provider: Source of build status, see :class:`StatusProvider`.
        clock: Monotonic time source in seconds, used for every derived metric.
    """

    def __init__(
        self,
        status_provider: StatusProvider,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = status_provider
        self._clock = clock
        self._tracking: dict[str, TrackingState] = {}
        self._historical_averages: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def track_build_progress(
        self, build_id: str, options: ProgressOptions | None = None
    ) -> TrackingSession:
        """Start tracking ``build_id``, replacing any existing session.

        The first poll runs as soon as the event loop gets control; later
        polls follow every ``polling_interval`` seconds while the build is
        queued or running. Must be called from a running event loop.
        """
        self.stop_tracking(build_id)

        opts = options or ProgressOptions()
        state = TrackingState(
            build_id=build_id,
            options=opts,
            emitter=EventEmitter(),
            start_time=self._clock(),
            started_at=datetime.now(timezone.utc),
        )
        self._tracking[build_id] = state

        loop = asyncio.get_running_loop()
        state.task = loop.create_task(self._poll_loop(state), name=f"track-build-{build_id}")
        if opts.max_duration is not None:
            state.duration_handle = loop.call_later(
                opts.max_duration, self._on_max_duration, state
            )

        logger.debug("Tracking build %s every %.1fs", build_id, opts.polling_interval)
        return TrackingSession(state)

    async def poll_once(self, build_id: str) -> BuildStatus | None:
        """Fetch the status of ``build_id`` once.

        For a tracked build this is an extra poll of its session, serialized
        with the session's own polls and counted against its error budget.
        Otherwise a throwaway session is used.

        Returns:
            The fetched status, or None if the session ended meanwhile.
        """
        state = self._tracking.get(build_id)
        if state is None:
            state = TrackingState(
                build_id=build_id,
                options=ProgressOptions(),
                emitter=EventEmitter(),
                start_time=self._clock(),
                started_at=datetime.now(timezone.utc),
                ephemeral=True,
            )
        async with state.lock:
            return await self._poll(state)

    def stop_tracking(self, build_id: str) -> None:
        """Stop tracking ``build_id``. Unknown ids are ignored."""
        state = self._tracking.get(build_id)
        if state is not None:
            self._teardown(state, StopReason.MANUAL)

    def stop_all_tracking(self) -> None:
        """Stop every active session."""
        for build_id in list(self._tracking):
            self.stop_tracking(build_id)

    async def close(self) -> None:
        """Stop every session and wait for their poll tasks to exit."""
        tasks = [s.task for s in self._tracking.values() if s.task is not None]
        self.stop_all_tracking()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_active_tracking(self) -> list[str]:
        """Return the ids of builds currently being tracked."""
        return list(self._tracking)

    def get_tracking_info(self, build_id: str) -> TrackingInfo | None:
        """Return a snapshot of a session, or None if it is not tracked."""
        state = self._tracking.get(build_id)
        if state is None:
            return None
        return TrackingInfo(
            build_id=build_id,
            is_tracking=True,
            last_update=state.last_update,
            poll_count=state.poll_count,
            error_count=state.error_count,
            started_at=state.started_at,
            current_stage=state.current_stage,
        )

    def set_historical_average(self, build_type_id: str, average_seconds: float) -> None:
        """Record the typical duration of builds of ``build_type_id``."""
        self._historical_averages[build_type_id] = average_seconds

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self, state: TrackingState) -> None:
        while self._is_current(state):
            try:
                async with state.lock:
                    status = await self._poll(state)
            except Exception:
                # Already reported through the "error" event
                status = None
            else:
                if status is None or status.state not in ACTIVE_STATES:
                    return

            if not self._is_current(state):
                return
            try:
                await asyncio.wait_for(
                    state.cancel_event.wait(), timeout=state.options.polling_interval
                )
                return
            except asyncio.TimeoutError:
                pass

    async def _poll(self, state: TrackingState) -> BuildStatus | None:
        """Run one poll. Caller holds ``state.lock``."""
        if not self._is_current(state):
            return None

        query = BuildStatusQuery(
            build_id=state.build_id,
            include_tests=state.options.include_tests,
            include_problems=state.options.include_problems,
            force_refresh=True,
        )
        try:
            status = await self._provider.get_build_status(query)
        except Exception as exc:
            if self._is_current(state):
                self._record_error(state, exc)
            raise

        if not self._is_current(state):
            logger.debug("Discarding late status for build %s", state.build_id)
            return None

        self._apply_status(state, status)
        return status

    def _record_error(self, state: TrackingState, error: Exception) -> None:
        state.error_count += 1
        logger.warning(
            "Poll %d of build %s failed (%d/%d): %s",
            state.poll_count + 1,
            state.build_id,
            state.error_count,
            state.options.max_retries,
            error,
        )
        state.emitter.emit(EventName.ERROR, ErrorEvent(error=error, build_id=state.build_id))

        if not state.ephemeral and state.error_count >= state.options.max_retries:
            self._teardown(state, StopReason.MAX_RETRIES_EXCEEDED)

    def _apply_status(self, state: TrackingState, status: BuildStatus) -> None:
        now = self._clock()
        state.poll_count += 1
        state.error_count = 0
        if status.build_type_id and not state.build_type_id:
            state.build_type_id = status.build_type_id

        update = self._process_update(state, status, now)
        self._emit_events(state, update, now)

        state.last_update = status
        # Only refresh the timestamp when progress moves
        if state.last_progress is None or state.last_progress != status.percentage_complete:
            state.last_progress = status.percentage_complete
            state.last_progress_time = now

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _process_update(
        self, state: TrackingState, status: BuildStatus, now: float
    ) -> ProgressUpdate:
        opts = state.options
        pct = status.percentage_complete
        velocity: float | None = None
        remaining: float | None = None
        estimated_total = status.estimated_total_seconds

        if (
            opts.calculate_velocity
            and state.last_progress is not None
            and state.last_progress_time is not None
        ):
            progress_delta = pct - state.last_progress
            time_delta = now - state.last_progress_time
            if time_delta > 0 and progress_delta > 0:
                velocity = progress_delta / time_delta
                remaining = (100 - pct) / velocity

        if opts.use_historical_data and state.build_type_id:
            average = self._historical_averages.get(state.build_type_id)
            if average and not estimated_total:
                estimated_total = average
                if pct > 0:
                    remaining = average - average * pct / 100

        is_overdue = False
        overdue_seconds: float | None = None
        elapsed = status.elapsed_seconds
        if status.estimated_total_seconds and elapsed and elapsed > status.estimated_total_seconds:
            is_overdue = True
            overdue_seconds = elapsed - status.estimated_total_seconds

        stage_duration: float | None = None
        stage_progress: float | None = None
        stage = status.current_stage_text
        if opts.track_stages and stage:
            if stage != state.current_stage:
                self._change_stage(state, stage, pct, now)
            if state.stage_start_progress is not None:
                stage_progress = pct - state.stage_start_progress
            if state.stage_start_time is not None:
                stage_duration = now - state.stage_start_time

        return ProgressUpdate(
            build_id=state.build_id,
            status=status,
            velocity=velocity,
            estimated_time_remaining=remaining,
            estimated_total_seconds=estimated_total,
            is_overdue=is_overdue,
            overdue_seconds=overdue_seconds,
            stage_duration=stage_duration,
            stage_progress=stage_progress,
        )

    def _change_stage(self, state: TrackingState, stage: str, pct: float, now: float) -> None:
        if (
            state.current_stage
            and state.options.calculate_stage_metrics
            and state.stage_start_time is not None
            and state.stage_start_progress is not None
        ):
            metrics = StageMetrics(
                build_id=state.build_id,
                stage_name=state.current_stage,
                duration=now - state.stage_start_time,
                percentage_of_build=pct - state.stage_start_progress,
                start_progress=state.stage_start_progress,
                end_progress=pct,
            )
            state.emitter.emit(EventName.STAGE_COMPLETED, metrics)

        logger.debug("Build %s entered stage %r", state.build_id, stage)
        state.current_stage = stage
        state.stage_start_time = now
        state.stage_start_progress = pct
        state.emitter.emit(
            EventName.STAGE_CHANGED, StageChangedEvent(build_id=state.build_id, stage=stage)
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_events(self, state: TrackingState, update: ProgressUpdate, now: float) -> None:
        emitter = state.emitter
        status = update.status
        previous = state.last_update.state if state.last_update is not None else None
        current = status.state

        emitter.emit(EventName.PROGRESS, update)

        if previous != current:
            if current == "queued":
                emitter.emit(
                    EventName.QUEUED,
                    QueuedEvent(
                        build_id=state.build_id,
                        queue_position=status.queue_position,
                        estimated_start_time=status.estimated_start_time,
                    ),
                )
            elif current == "running":
                if previous == "queued":
                    emitter.emit(
                        EventName.STARTED,
                        StartedEvent(build_id=state.build_id, start_date=status.start_date),
                    )
            elif current == "finished" and status.status == "SUCCESS":
                logger.info("Build %s completed", state.build_id)
                emitter.emit(
                    EventName.COMPLETED,
                    CompletedEvent(
                        build_id=state.build_id,
                        status=status.status,
                        elapsed_seconds=status.elapsed_seconds,
                        finish_date=status.finish_date,
                    ),
                )
                self._teardown(state, None)
            elif current in ("finished", "failed"):
                logger.info("Build %s failed: %s", state.build_id, status.status_text)
                emitter.emit(
                    EventName.FAILED,
                    FailedEvent(
                        build_id=state.build_id,
                        status=status.status,
                        status_text=status.status_text,
                        failure_reason=status.failure_reason,
                    ),
                )
                self._teardown(state, None)
            elif current == "canceled":
                logger.info("Build %s canceled by %s", state.build_id, status.canceled_by)
                emitter.emit(
                    EventName.CANCELED,
                    CanceledEvent(
                        build_id=state.build_id,
                        canceled_by=status.canceled_by,
                        canceled_date=status.canceled_date,
                    ),
                )
                self._teardown(state, None)

        threshold = state.options.stall_threshold
        if (
            threshold
            and current == "running"
            and state.last_progress == update.percentage_complete
            and state.last_progress_time is not None
        ):
            since_progress = now - state.last_progress_time
            if since_progress > threshold:
                logger.warning(
                    "Build %s stalled at %.0f%% for %.1fs",
                    state.build_id,
                    update.percentage_complete,
                    since_progress,
                )
                emitter.emit(
                    EventName.STALLED,
                    StalledEvent(
                        build_id=state.build_id,
                        percentage_complete=update.percentage_complete,
                        time_since_progress=since_progress,
                    ),
                )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _is_current(self, state: TrackingState) -> bool:
        if state.ephemeral:
            return True
        return self._tracking.get(state.build_id) is state

    def _on_max_duration(self, state: TrackingState) -> None:
        if self._is_current(state):
            logger.warning(
                "Tracking of build %s exceeded %.1fs", state.build_id, state.options.max_duration
            )
            self._teardown(state, StopReason.MAX_DURATION_EXCEEDED)

    def _teardown(self, state: TrackingState, reason: StopReason | None) -> None:
        """End a session.

        ``reason`` is None after a terminal build state, in which case no
        "stopped" event is emitted.
        """
        if state.done.is_set():
            return
        if self._tracking.get(state.build_id) is state:
            del self._tracking[state.build_id]

        state.cancel_event.set()
        if state.duration_handle is not None:
            state.duration_handle.cancel()
            state.duration_handle = None

        state.stop_reason = reason
        if reason is not None:
            logger.info("Stopped tracking build %s: %s", state.build_id, reason.value)
            state.emitter.emit(
                EventName.STOPPED, StoppedEvent(build_id=state.build_id, reason=reason)
            )
        state.emitter.close()
        state.done.set()
