"""Build queue orchestration: submission, ordering and capacity telemetry.

Submissions and queue mutations go through :func:`call_upstream`, so they are
retried on transient failures and short-circuited by the endpoint breaker.
Reads used to derive positions and capacity go through the breaker only.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol, TypeVar

from .circuit_breaker import CircuitBreakerManager
from .concurrency import batch_process
from .config import QueueConfig, RetryConfig
from .client.errors import BuildNotFoundError
from .errors import (
    BuildBlockedError,
    BuildNotInQueueError,
    QueueCapacityError,
    QueueOrderError,
    ValidationError,
)
from .events import (
    BatchFailure,
    BatchPartialEvent,
    CanceledEvent,
    ErrorEvent,
    EventEmitter,
    EventName,
    Listener,
    RetryEvent,
)
from .models import (
    BuildDependency,
    BuildStatus,
    QueueBuildRequest,
    QueuedBuild,
    QueueEntry,
    QueueLimitations,
    QueuePosition,
    as_list,
)
from .resilience import (
    AGENTS_ENDPOINT,
    BUILD_QUEUE_ENDPOINT,
    BUILD_TYPES_ENDPOINT,
    BUILDS_ENDPOINT,
    call_upstream,
    create_breakers,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_CONCURRENT_SETTING = "maximumConcurrentBuilds"


class SubmissionProvider(Protocol):
    """Upstream operations used by :class:`BuildQueueOrchestrator`."""

    async def add_build_to_queue(
        self, payload: dict[str, Any], move_to_top: bool = False
    ) -> dict[str, Any]: ...

    async def cancel_queued_build(self, build_id: str, comment: str | None = None) -> None: ...

    async def set_queued_builds_order(self, build_ids: list[str]) -> None: ...

    async def get_queue(self) -> list[QueueEntry]: ...

    async def get_build(
        self, locator: str, *, include_tests: bool = False, include_problems: bool = False
    ) -> BuildStatus: ...

    async def get_build_type(self, build_type_id: str) -> dict[str, Any]: ...

    async def count_builds(self, locator: str) -> int: ...

    async def count_agents(self, locator: str) -> int: ...


def validate_dependencies(dependencies: Sequence[BuildDependency]) -> None:
    """Reject a dependency list naming the same build more than once.

    Only the request's own list is inspected. Cycles through builds already
    in the queue are not detected.

    Raises:
        ValidationError: On the first repeated build id.
    """
    seen: set[str] = set()
    for dep in dependencies:
        if dep.build_id in seen:
            raise ValidationError(
                f"Circular dependency detected: {dep.build_id} appears multiple times"
            )
        seen.add(dep.build_id)


def find_blocking_builds(queue: Sequence[QueueEntry], entry: QueueEntry) -> list[str]:
    """Return the snapshot dependencies of ``entry`` that are still queued."""
    queued_ids = {e.build_id for e in queue}
    return [dep for dep in entry.snapshot_dependencies if dep in queued_ids]


class BuildQueueOrchestrator:
    """Submits builds and manages their place in the upstream queue.

    Usage:
        async with QueueClient(url, token=token) as client:
            orchestrator = BuildQueueOrchestrator(client)
            orchestrator.on(EventName.QUEUED, lambda build: print(build.build_id))
            queued = await orchestrator.queue_build(
                QueueBuildRequest(build_type_id="App_Build", branch="main")
            )
            position = await orchestrator.get_queue_position(queued.build_id)

    Events:
        queued: :class:`QueuedBuild` after a successful submission.
        error: :class:`ErrorEvent` for a failed submission (the error is also raised).
        retry: :class:`RetryEvent` before each backoff sleep.
        canceled: :class:`CanceledEvent` after ``cancel_build``.
        batch:partial: :class:`BatchPartialEvent` when ``queue_builds`` had failures.
    """

    def __init__(
        self,
        client: SubmissionProvider,
        breakers: CircuitBreakerManager | None = None,
        config: QueueConfig | None = None,
        retry_config: RetryConfig | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Upstream submission provider.
            breakers: Breaker manager shared with other components; a private
                one is created if omitted.
            config: Queue settings.
            retry_config: Backoff settings for submissions and mutations.
            emitter: Event emitter to publish on; a new one is created if omitted.
        """
        self._client = client
        self._breakers = breakers or create_breakers()
        self._config = config or QueueConfig()
        self._retry_config = retry_config or RetryConfig()
        self._events = emitter or EventEmitter()

    @property
    def events(self) -> EventEmitter:
        """Return the emitter carrying orchestrator events."""
        return self._events

    @property
    def breakers(self) -> CircuitBreakerManager:
        """Return the breaker manager guarding upstream calls."""
        return self._breakers

    def on(self, event: EventName | str, listener: Listener) -> Listener:
        """Register a listener for an orchestrator event."""
        return self._events.on(event, listener)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def queue_build(self, request: QueueBuildRequest) -> QueuedBuild:
        """Add a build to the queue.

        Args:
            request: Build configuration, branch, parameters and dependencies.

        Returns:
            Snapshot of the queued build.

        Raises:
            ValidationError: If a dependency is listed twice. Raised before any
                network call.
            QueueCapacityError: If the configuration has no free capacity.
            UpstreamError: If the submission failed after retries.
            CircuitOpenError: If the queue endpoint breaker is open.
        """
        try:
            validate_dependencies(request.dependencies)

            limitations = await self.get_queue_limitations(request.build_type_id)
            self._check_capacity(request, limitations)

            payload = request.to_payload()
            data = await call_upstream(
                self._breakers,
                BUILD_QUEUE_ENDPOINT,
                lambda: self._client.add_build_to_queue(payload, move_to_top=request.move_to_top),
                self._retry_config,
                on_retry=self._retry_listener(build_type_id=request.build_type_id),
            )
            queued = QueuedBuild.from_api(data)

            if request.move_to_top:
                await self._move_new_build_to_top(queued.build_id)
        except Exception as exc:
            logger.error("Failed to queue build of %s: %s", request.build_type_id, exc)
            self._events.emit(
                EventName.ERROR, ErrorEvent(error=exc, build_type_id=request.build_type_id)
            )
            raise

        logger.info(
            "Queued build %s of %s at position %d",
            queued.build_id,
            queued.build_type_id or request.build_type_id,
            queued.queue_position,
        )
        self._events.emit(EventName.QUEUED, queued)
        return queued

    async def queue_builds(self, requests: Sequence[QueueBuildRequest]) -> list[QueuedBuild]:
        """Queue several builds, tolerating individual failures.

        Requests are submitted in batches of ``QueueConfig.batch_concurrency``.
        Failed submissions are reported through a single ``batch:partial``
        event; they are never raised.

        Returns:
            The successfully queued builds, in request order.
        """
        failures: list[BatchFailure] = []

        async def _submit(index: int, request: QueueBuildRequest) -> QueuedBuild | None:
            try:
                return await self.queue_build(request)
            except Exception as exc:
                failures.append(BatchFailure(index=index, error=exc))
                return None

        async def _process(batch: list[tuple[int, QueueBuildRequest]]) -> list[QueuedBuild | None]:
            return list(await asyncio.gather(*[_submit(i, r) for i, r in batch]))

        results = await batch_process(
            list(enumerate(requests)),
            _process,
            self._config.batch_concurrency,
        )
        successful = [build for build in results if build is not None]

        if failures:
            failures.sort(key=lambda f: f.index)
            logger.warning(
                "Queued %d of %d builds; %d failed",
                len(successful),
                len(requests),
                len(failures),
            )
            self._events.emit(
                EventName.BATCH_PARTIAL, BatchPartialEvent(successful=successful, failed=failures)
            )
        return successful

    async def cancel_build(self, build_id: str, comment: str | None = None) -> None:
        """Remove a queued build from the queue."""
        await call_upstream(
            self._breakers,
            BUILD_QUEUE_ENDPOINT,
            lambda: self._client.cancel_queued_build(build_id, comment),
            self._retry_config,
            on_retry=self._retry_listener(build_id=build_id),
        )
        logger.info("Canceled queued build %s", build_id)
        self._events.emit(EventName.CANCELED, CanceledEvent(build_id=build_id, comment=comment))

    # ------------------------------------------------------------------
    # Queue position and ordering
    # ------------------------------------------------------------------

    async def get_queue_position(self, build_id: str) -> QueuePosition:
        """Return where ``build_id`` sits in the live queue.

        A build that already left the queue (running or finished) reports
        position 0.

        Raises:
            BuildNotInQueueError: If the build is neither queued nor started.
        """
        queue = await self._fetch_queue()
        return await self._position_in(queue, build_id)

    async def move_to_top(self, build_id: str) -> QueuePosition:
        """Move a queued build to the front of the queue.

        Returns:
            The position re-read after the reorder.

        Raises:
            BuildBlockedError: If queued dependencies block the build.
            QueueOrderError: If the build already left the queue.
        """
        position = await self.get_queue_position(build_id)
        if position.position == 1:
            return position
        if position.blocked_by:
            raise BuildBlockedError(build_id, position.blocked_by)
        if position.position == 0:
            raise QueueOrderError(f"Build {build_id} has already left the queue")

        await self._set_order([build_id])
        logger.info("Moved build %s to the top of the queue", build_id)
        return await self.get_queue_position(build_id)

    async def reorder_queue(self, build_ids: Sequence[str]) -> list[QueuePosition]:
        """Put ``build_ids`` at the front of the queue in the given order.

        Every build is checked before the queue is touched.

        Returns:
            Positions re-read after the reorder, in ``build_ids`` order.

        Raises:
            ValidationError: If the list is empty or repeats a build.
            BuildBlockedError: For the first build blocked by a dependency.
            BuildNotInQueueError: If a build is unknown.
        """
        ids = list(build_ids)
        if not ids:
            raise ValidationError("build_ids must not be empty")
        if len(set(ids)) != len(ids):
            raise ValidationError("build_ids must not contain duplicates")

        queue = await self._fetch_queue()
        positions = [await self._position_in(queue, build_id) for build_id in ids]
        for pos in positions:
            if pos.blocked_by:
                raise BuildBlockedError(pos.build_id, pos.blocked_by)

        await self._set_order(ids)
        logger.info("Reordered %d queued builds", len(ids))

        queue = await self._fetch_queue()
        return [await self._position_in(queue, build_id) for build_id in ids]

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    async def get_queue_limitations(self, build_type_id: str) -> QueueLimitations:
        """Collect capacity telemetry for a build configuration.

        The reads are independent and not atomic. If any of them fails, the
        conservative defaults are returned instead of an error.
        """
        reads: list[Awaitable[Any]] = [
            self._read(BUILD_TYPES_ENDPOINT, lambda: self._client.get_build_type(build_type_id)),
            self._read(
                BUILDS_ENDPOINT,
                lambda: self._client.count_builds(f"buildType:(id:{build_type_id}),state:running"),
            ),
            self._fetch_queue(),
            self._read(
                AGENTS_ENDPOINT,
                lambda: self._client.count_agents(
                    f"compatible:(buildType:(id:{build_type_id})),enabled:true"
                ),
            ),
        ]
        personal_limit = self._config.personal_build_limit
        if personal_limit is not None:
            reads.append(
                self._read(
                    BUILDS_ENDPOINT,
                    lambda: self._client.count_builds("personal:true,user:current,state:running"),
                )
            )

        results = await asyncio.gather(*reads, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.warning(
                "Queue limitations for %s unavailable, using defaults: %s",
                build_type_id,
                errors[0],
            )
            return QueueLimitations(personal_build_limit=personal_limit)

        build_type, running, queue, agents = results[:4]
        return QueueLimitations(
            max_concurrent_builds=self._max_concurrent(build_type),
            currently_running=running,
            queued_builds=sum(1 for e in queue if e.build_type_id == build_type_id),
            available_agents=agents,
            personal_build_limit=personal_limit,
            user_personal_builds=results[4] if personal_limit is not None else None,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_capacity(request: QueueBuildRequest, limitations: QueueLimitations) -> None:
        max_builds = limitations.max_concurrent_builds
        if max_builds and limitations.currently_running >= max_builds:
            raise QueueCapacityError(f"Maximum concurrent builds ({max_builds}) reached")

        personal_limit = limitations.personal_build_limit
        if (
            request.personal
            and personal_limit
            and limitations.user_personal_builds is not None
            and limitations.user_personal_builds >= personal_limit
        ):
            raise QueueCapacityError(f"Personal build limit ({personal_limit}) reached")

    @staticmethod
    def _max_concurrent(build_type: dict[str, Any]) -> int | None:
        settings = build_type.get("settings") or {}
        for prop in as_list(settings.get("property")):
            if isinstance(prop, dict) and prop.get("name") == _MAX_CONCURRENT_SETTING:
                try:
                    value = int(prop.get("value") or 0)
                except ValueError:
                    logger.warning("Ignoring invalid %s value %r", _MAX_CONCURRENT_SETTING, prop)
                    return None
                # 0 means unlimited
                return value or None
        return None

    async def _move_new_build_to_top(self, build_id: str) -> None:
        # moveToTop was also sent with the submission itself
        try:
            await self.move_to_top(build_id)
        except (BuildBlockedError, QueueOrderError, BuildNotInQueueError) as exc:
            logger.warning("Could not move build %s to the top: %s", build_id, exc)

    async def _read(self, endpoint: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await self._breakers.execute(endpoint, fn)

    async def _fetch_queue(self) -> list[QueueEntry]:
        return await self._read(BUILD_QUEUE_ENDPOINT, self._client.get_queue)

    async def _set_order(self, build_ids: list[str]) -> None:
        await call_upstream(
            self._breakers,
            BUILD_QUEUE_ENDPOINT,
            lambda: self._client.set_queued_builds_order(build_ids),
            self._retry_config,
            on_retry=self._retry_listener(),
        )

    async def _position_in(self, queue: Sequence[QueueEntry], build_id: str) -> QueuePosition:
        index = next((i for i, e in enumerate(queue) if e.build_id == build_id), None)
        if index is None:
            return await self._position_outside_queue(build_id)

        entry = queue[index]
        position = index + 1
        blocked_by = find_blocking_builds(queue, entry)

        wait_time: float | None = None
        if entry.wait_reason and "agent" in entry.wait_reason:
            wait_time = index * self._config.average_build_seconds

        return QueuePosition(
            build_id=build_id,
            position=position,
            estimated_start_time=entry.estimated_start_time,
            estimated_wait_time=wait_time,
            can_move_to_top=position > 1 and not blocked_by,
            blocked_by=blocked_by,
        )

    async def _position_outside_queue(self, build_id: str) -> QueuePosition:
        try:
            status = await self._read(BUILDS_ENDPOINT, lambda: self._client.get_build(build_id))
        except BuildNotFoundError as exc:
            raise BuildNotInQueueError(build_id) from exc

        if status.state == "queued":
            raise BuildNotInQueueError(build_id)
        return QueuePosition(build_id=build_id, position=0, can_move_to_top=False)

    def _retry_listener(
        self, build_id: str | None = None, build_type_id: str | None = None
    ) -> Callable[[BaseException, int], None]:
        max_attempts = self._retry_config.max_attempts

        def _on_retry(error: BaseException, attempt: int) -> None:
            logger.warning("Upstream call failed (attempt %d/%d): %s", attempt, max_attempts, error)
            self._events.emit(
                EventName.RETRY,
                RetryEvent(
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=error,
                    build_id=build_id,
                    build_type_id=build_type_id,
                ),
            )

        return _on_retry

