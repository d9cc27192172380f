"""Build status lookups with queue fallback and a short-lived cache.

A freshly queued build may not be visible on the builds endpoint yet, and a
queued build may start between two requests. ``BuildStatusService`` resolves
that window with three steps: the builds endpoint, then the queue endpoint,
then the builds endpoint once more.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from .circuit_breaker import CircuitBreakerManager
from .client.errors import AccessDeniedError, BuildNotFoundError
from .errors import ValidationError
from .models import BuildStatus
from .resilience import BUILD_QUEUE_ENDPOINT, BUILDS_ENDPOINT, create_breakers

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300.0  # 5 minutes

# Only builds that can no longer change are cached
_CACHEABLE_STATES = frozenset({"finished", "canceled"})


@dataclass(frozen=True)
class BuildStatusQuery:
    """Criteria identifying one build.

    Either ``build_id`` or ``build_number`` together with ``build_type_id``
    must be given.
    """

    build_id: str | None = None
    build_number: str | None = None
    build_type_id: str | None = None
    branch: str | None = None
    include_tests: bool = False
    include_problems: bool = False
    force_refresh: bool = False

    def validate(self) -> None:
        """Raise ValidationError when the query cannot identify a build."""
        if not self.build_id and not self.build_number:
            raise ValidationError("Either build_id or build_number must be provided")
        if self.build_number and not self.build_type_id:
            raise ValidationError("build_type_id is required when querying by build number")

    @property
    def locator(self) -> str:
        """Return the builds endpoint locator for this query."""
        if self.build_id:
            return f"id:{self.build_id}"
        parts = [f"buildType:(id:{self.build_type_id})", f"number:{self.build_number}"]
        if self.branch:
            parts.append(f"branch:{self.branch}")
        return ",".join(parts)

    @property
    def cache_key(self) -> str:
        if self.build_id:
            return f"id:{self.build_id}"
        return f"num:{self.build_type_id}:{self.build_number}:{self.branch or 'default'}"

    @property
    def label(self) -> str:
        return self.build_id or str(self.build_number)


class StatusProvider(Protocol):
    """Anything able to resolve a build's current status."""

    async def get_build_status(self, query: BuildStatusQuery) -> BuildStatus: ...


class BuildStatusReader(Protocol):
    """Upstream reads needed by :class:`BuildStatusService`."""

    async def get_build(
        self, locator: str, *, include_tests: bool = False, include_problems: bool = False
    ) -> BuildStatus: ...

    async def get_queued_build(self, build_id: str) -> BuildStatus: ...

    async def find_builds(self, locator: str) -> list[BuildStatus]: ...


class BuildStatusService:
    """Status provider backed by the upstream REST API.

    Usage:
        service = BuildStatusService(client, breakers)
        status = await service.get_build_status(BuildStatusQuery(build_id="42"))

    Args:
        client: Upstream reader, normally a :class:`~build_orchestrator.client.QueueClient`.
        breakers: Shared breaker manager; a private one is created if omitted.
        cache_ttl: Seconds a finished or canceled status stays cached.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        client: BuildStatusReader,
        breakers: CircuitBreakerManager | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._breakers = breakers or create_breakers(clock=clock)
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, tuple[BuildStatus, float]] = {}

    async def get_build_status(self, query: BuildStatusQuery) -> BuildStatus:
        """Return the status of the build identified by ``query``.

        Raises:
            ValidationError: If the query identifies no build.
            BuildNotFoundError: If every lookup step answered 404.
            AccessDeniedError: If the server answered 403.
        """
        query.validate()

        if not query.force_refresh:
            cached = self._get_cached(query.cache_key)
            if cached is not None:
                return cached

        # Step 1: builds endpoint
        try:
            return await self._from_builds(query)
        except BuildNotFoundError as exc:
            if not query.build_id:
                raise BuildNotFoundError(f"Build not found: {query.label}") from exc
        except AccessDeniedError as exc:
            raise AccessDeniedError(f"Access denied to build: {query.label}") from exc

        # Step 2: the build may still be queued
        build_id = query.build_id
        try:
            return await self._breakers.execute(
                BUILD_QUEUE_ENDPOINT, lambda: self._client.get_queued_build(build_id)
            )
        except BuildNotFoundError:
            logger.debug("Build %s in neither builds nor queue; checking builds again", build_id)
        except AccessDeniedError as exc:
            raise AccessDeniedError(f"Access denied to build: {query.label}") from exc

        # Step 3: it may have left the queue between the first two requests
        try:
            return await self._from_builds(query)
        except BuildNotFoundError as exc:
            raise BuildNotFoundError(f"Build not found: {query.label}") from exc
        except AccessDeniedError as exc:
            raise AccessDeniedError(f"Access denied to build: {query.label}") from exc

    async def get_build_status_by_locator(self, locator: str) -> BuildStatus:
        """Return the first build matching a raw builds locator.

        Raises:
            BuildNotFoundError: If nothing matches.
        """
        try:
            builds = await self._breakers.execute(
                BUILDS_ENDPOINT, lambda: self._client.find_builds(locator)
            )
        except BuildNotFoundError as exc:
            raise BuildNotFoundError(f"No builds found for locator: {locator}") from exc
        if not builds:
            raise BuildNotFoundError(f"No builds found for locator: {locator}")
        return builds[0]

    def clear_cache(self) -> None:
        """Forget every cached status."""
        self._cache.clear()

    async def _from_builds(self, query: BuildStatusQuery) -> BuildStatus:
        status = await self._breakers.execute(
            BUILDS_ENDPOINT,
            lambda: self._client.get_build(
                query.locator,
                include_tests=query.include_tests,
                include_problems=query.include_problems,
            ),
        )
        if status.state in _CACHEABLE_STATES and not query.force_refresh:
            self._store(query.cache_key, status)
        return status

    def _store(self, key: str, status: BuildStatus) -> None:
        now = self._clock()
        expired = [
            cached for cached, (_, stored_at) in self._cache.items()
            if now - stored_at > self._cache_ttl
        ]
        for stale in expired:
            del self._cache[stale]
        self._cache[key] = (status, now)

    def _get_cached(self, key: str) -> BuildStatus | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        status, stored_at = entry
        if self._clock() - stored_at > self._cache_ttl:
            del self._cache[key]
            return None
        return status
