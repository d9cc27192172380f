"""Async HTTP client for the upstream build queue REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..models import BuildStatus, QueueEntry, as_list
from .errors import (
    AccessDeniedError,
    BuildNotFoundError,
    UpstreamClientError,
    UpstreamTransientError,
)

logger = logging.getLogger(__name__)

_REST_PREFIX = "/app/rest"

# Fields requested from the builds endpoint for status queries
_BASE_BUILD_FIELDS = (
    "id",
    "number",
    "state",
    "status",
    "statusText",
    "buildTypeId",
    "branchName",
    "webUrl",
    "percentageComplete",
    "queuedDate",
    "startDate",
    "finishDate",
    "canceled",
    "failureReason",
    "running-info",
    "queued-info",
    "canceledInfo",
)

_QUEUED_BUILD_FIELDS = "id,number,state,status,buildTypeId,branchName,webUrl,queuedDate,waitReason"
_QUEUE_LIST_FIELDS = (
    "build(id,buildTypeId,state,waitReason,estimatedStartTime,"
    "queued-info,snapshot-dependencies(build(id)))"
)


def build_fields(include_tests: bool = False, include_problems: bool = False) -> str:
    """Return the field selection for a build status request."""
    fields = list(_BASE_BUILD_FIELDS)
    if include_tests:
        fields.append("testOccurrences")
    if include_problems:
        fields.append("problemOccurrences")
    return ",".join(fields)


class QueueClient:
    """Async client wrapping the build queue REST API.

    Usage::

        async with QueueClient("https://ci.example.com", token="...") as client:
            data = await client.add_build_to_queue({"buildType": {"id": "App_Build"}})
            entries = await client.get_queue()

    Args:
        base_url: Base URL of the CI server.
        token: Bearer token sent with every request.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8111",
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
        )

    async def __aenter__(self) -> QueueClient:
        """Enter the async context manager.

        Returns:
            The client instance.
        """
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        """Exit the async context manager, closing the underlying HTTP client."""
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        """Send an HTTP request and return the parsed JSON response.

        Args:
            method: HTTP method (GET, POST, etc.).
            path: URL path relative to the REST prefix.
            **kwargs: Extra keyword arguments forwarded to ``httpx.AsyncClient.request``.

        Returns:
            Parsed JSON body, or None for empty responses.

        Raises:
            BuildNotFoundError: If the server responds with 404.
            AccessDeniedError: If the server responds with 403.
            UpstreamTransientError: On 5xx, 429, or a transport failure.
            UpstreamClientError: For any other 4xx status code.
        """
        try:
            response = await self._client.request(method, f"{_REST_PREFIX}{path}", **kwargs)
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise UpstreamTransientError(status_code=None, message=str(exc)) from exc

        status = response.status_code
        if status == 404:
            raise BuildNotFoundError(message=self._extract_detail(response))
        if status == 403:
            raise AccessDeniedError(message=self._extract_detail(response))
        if status >= 500 or status == 429:
            raise UpstreamTransientError(status_code=status, message=self._extract_detail(response))
        if status >= 400:
            raise UpstreamClientError(status_code=status, message=self._extract_detail(response))

        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _extract_detail(response: httpx.Response) -> str:
        """Extract a human-readable error detail from a response.

        Tries to parse the JSON body for a ``message`` or ``detail`` key;
        falls back to the raw response text.
        """
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            for key in ("message", "detail"):
                if key in body:
                    return str(body[key])
        return response.text

    # ------------------------------------------------------------------
    # Build queue
    # ------------------------------------------------------------------

    async def add_build_to_queue(
        self,
        payload: dict[str, Any],
        move_to_top: bool = False,
    ) -> dict[str, Any]:
        """Submit a build request to the queue.

        The response is returned unparsed; see ``QueuedBuild.from_api``.

        Args:
            payload: Request body, see ``QueueBuildRequest.to_payload``.
            move_to_top: Ask the server to place the build first.

        Returns:
            The raw submission response.
        """
        params = {"moveToTop": "true"} if move_to_top else None
        data = await self._request("POST", "/buildQueue", json=payload, params=params)
        return data or {}

    async def get_queue(self) -> list[QueueEntry]:
        """Return the live queue in order, first entry first."""
        data = await self._request("GET", "/buildQueue", params={"fields": _QUEUE_LIST_FIELDS})
        builds = (data or {}).get("build")
        return [QueueEntry.from_api(entry) for entry in as_list(builds) if isinstance(entry, dict)]

    async def get_queued_build(self, build_id: str) -> BuildStatus:
        """Return the status of a build that is still waiting in the queue."""
        data = await self._request(
            "GET", f"/buildQueue/id:{build_id}", params={"fields": _QUEUED_BUILD_FIELDS}
        )
        if data is None:
            raise BuildNotFoundError("Queued build data is empty")
        return BuildStatus.from_queue_api(data)

    async def cancel_queued_build(self, build_id: str, comment: str | None = None) -> None:
        """Cancel a queued build without re-adding it."""
        body = {"comment": comment or "", "readdIntoQueue": False}
        await self._request("POST", f"/buildQueue/id:{build_id}", json=body)

    async def set_queued_builds_order(self, build_ids: list[str]) -> None:
        """Place ``build_ids`` at the front of the queue in the given order."""
        body = {"build": [{"id": int(build_id)} for build_id in build_ids]}
        await self._request("PUT", "/buildQueue/order", json=body)

    # ------------------------------------------------------------------
    # Builds, build types, agents
    # ------------------------------------------------------------------

    async def get_build(
        self,
        locator: str,
        *,
        include_tests: bool = False,
        include_problems: bool = False,
    ) -> BuildStatus:
        """Return the status of a build addressed by ``locator``.

        A bare id is turned into an ``id:`` locator.
        """
        if ":" not in locator:
            locator = f"id:{locator}"
        data = await self._request(
            "GET",
            f"/builds/{locator}",
            params={"fields": build_fields(include_tests, include_problems)},
        )
        if data is None:
            raise BuildNotFoundError("Build data is empty")
        return BuildStatus.from_api(
            data, include_tests=include_tests, include_problems=include_problems
        )

    async def find_builds(self, locator: str) -> list[BuildStatus]:
        """Return builds matching ``locator``, newest first."""
        data = await self._request(
            "GET", "/builds", params={"locator": locator, "fields": f"build({build_fields()})"}
        )
        builds = (data or {}).get("build")
        return [BuildStatus.from_api(b) for b in as_list(builds) if isinstance(b, dict)]

    async def get_build_type(self, build_type_id: str) -> dict[str, Any]:
        """Return the raw settings payload of a build configuration."""
        data = await self._request(
            "GET", f"/buildTypes/id:{build_type_id}", params={"fields": "id,settings(property)"}
        )
        return data or {}

    async def count_builds(self, locator: str) -> int:
        """Return the number of builds matching ``locator``."""
        data = await self._request("GET", "/builds", params={"locator": locator, "fields": "count"})
        return int((data or {}).get("count") or 0)

    async def count_agents(self, locator: str) -> int:
        """Return the number of agents matching ``locator``."""
        data = await self._request("GET", "/agents", params={"locator": locator, "fields": "count"})
        return int((data or {}).get("count") or 0)
