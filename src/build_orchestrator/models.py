"""Boundary models for the upstream build queue API.

Upstream payloads arrive in loose shapes: lists that may be a single object,
optional nested blocks ("running-info", "queued-info") and compact TeamCity
timestamps such as ``20250829T100000+0000``. They are normalized here once,
into validated Pydantic models, so the rest of the package never inspects raw
JSON.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

BuildState = Literal["queued", "running", "finished", "failed", "canceled"]
BuildResult = Literal["SUCCESS", "FAILURE", "ERROR", "UNKNOWN"]

ACTIVE_STATES: frozenset[str] = frozenset({"queued", "running"})
TERMINAL_STATES: frozenset[str] = frozenset({"finished", "failed", "canceled"})

_TEAMCITY_DATE_FORMAT = "%Y%m%dT%H%M%S%z"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a TeamCity compact timestamp or an ISO-8601 string.

    Args:
        value: Raw value from a payload (str, datetime or None).

    Returns:
        A timezone-aware datetime, or None for empty values.

    Raises:
        ValueError: If the string matches neither format.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    try:
        return datetime.strptime(text, _TEAMCITY_DATE_FORMAT)
    except ValueError:
        pass
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_list(value: Any) -> list[Any]:
    """Normalize an array-or-single-object field into a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _properties_to_dict(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    params: dict[str, str] = {}
    for prop in as_list(raw.get("property")):
        if isinstance(prop, dict) and prop.get("name") is not None:
            params[str(prop["name"])] = str(prop.get("value", ""))
    return params


class _Boundary(BaseModel):
    """Base for immutable snapshots built from upstream payloads."""

    model_config = ConfigDict(frozen=True, extra="ignore")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class BuildDependency(BaseModel):
    """A snapshot dependency declared on a submission."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_id: str
    wait_for_finish: bool = False


class QueueBuildRequest(BaseModel):
    """Request to add a build of ``build_type_id`` to the queue."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_type_id: str
    branch: str | None = None
    parameters: dict[str, str] = Field(default_factory=dict)
    personal: bool = False
    move_to_top: bool = False
    comment: str | None = None
    dependencies: list[BuildDependency] = Field(default_factory=list)

    @field_validator("build_type_id")
    @classmethod
    def validate_build_type_id(cls, v: str) -> str:
        """Validate build_type_id is not empty or whitespace."""
        if not v or not v.strip():
            raise ValueError("build_type_id must not be empty or whitespace")
        return v

    def to_payload(self) -> dict[str, Any]:
        """Render the request body expected by the queue endpoint."""
        payload: dict[str, Any] = {"buildType": {"id": self.build_type_id}}
        if self.branch is not None:
            payload["branchName"] = self.branch
        if self.personal:
            payload["personal"] = True
        if self.comment is not None:
            payload["comment"] = {"text": self.comment}
        if self.parameters:
            payload["properties"] = {
                "property": [{"name": k, "value": v} for k, v in self.parameters.items()]
            }
        if self.dependencies:
            payload["snapshot-dependencies"] = {
                "build": [{"id": dep.build_id} for dep in self.dependencies]
            }
        return payload


class QueuedBuild(_Boundary):
    """Snapshot of a build right after it was accepted by the queue."""

    build_id: str
    build_type_id: str = ""
    branch_name: str | None = None
    queue_position: int = 0
    queued_date: datetime
    estimated_start_time: datetime | None = None
    estimated_duration: float | None = None
    web_url: str = ""
    personal: bool = False
    triggered_by: str = "system"
    parameters: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> QueuedBuild:
        """Build a snapshot from a queue submission response."""
        triggered = data.get("triggered") or {}
        user = triggered.get("user") or {}
        queued_info = data.get("queued-info") or {}
        return cls(
            build_id=str(data.get("id", "")),
            build_type_id=str(data.get("buildTypeId", "")),
            branch_name=data.get("branchName"),
            queue_position=int(data.get("queuePosition") or queued_info.get("position") or 0),
            queued_date=parse_timestamp(data.get("queuedDate")) or datetime.now(timezone.utc),
            estimated_start_time=parse_timestamp(
                data.get("estimatedStartTime") or queued_info.get("estimatedStartTime")
            ),
            estimated_duration=data.get("estimatedDuration"),
            web_url=data.get("webUrl") or "",
            personal=bool(data.get("personal", False)),
            triggered_by=user.get("username") or "system",
            parameters=_properties_to_dict(data.get("properties")),
        )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class QueueEntry(_Boundary):
    """One build in the live queue listing."""

    build_id: str
    build_type_id: str = ""
    estimated_start_time: datetime | None = None
    wait_reason: str | None = None
    snapshot_dependencies: list[str] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> QueueEntry:
        """Normalize a raw queue entry."""
        deps = data.get("snapshot-dependencies") or {}
        dep_ids = [
            str(dep["id"])
            for dep in as_list(deps.get("build") if isinstance(deps, dict) else None)
            if isinstance(dep, dict) and dep.get("id") is not None
        ]
        queued_info = data.get("queued-info") or {}
        return cls(
            build_id=str(data.get("id", "")),
            build_type_id=str(data.get("buildTypeId", "")),
            estimated_start_time=parse_timestamp(
                data.get("estimatedStartTime") or queued_info.get("estimatedStartTime")
            ),
            wait_reason=data.get("waitReason"),
            snapshot_dependencies=dep_ids,
        )


class QueuePosition(_Boundary):
    """Position of a build in the queue, computed on demand."""

    build_id: str
    position: int
    estimated_start_time: datetime | None = None
    estimated_wait_time: float | None = None
    can_move_to_top: bool = False
    blocked_by: list[str] = Field(default_factory=list)


class QueueLimitations(_Boundary):
    """Capacity telemetry for a build configuration."""

    max_concurrent_builds: int | None = None
    currently_running: int = 0
    queued_builds: int = 0
    available_agents: int = 1
    personal_build_limit: int | None = None
    user_personal_builds: int | None = None


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TestSummary(_Boundary):
    """Test execution counts for a build."""

    __test__ = False  # not a pytest test class

    total: int = 0
    passed: int = 0
    failed: int = 0
    ignored: int = 0
    muted: int | None = None
    new_failed: int | None = None


class BuildProblem(_Boundary):
    """A problem reported on a build."""

    type: str = "unknown"
    identity: str = "unknown"
    description: str = ""


class BuildStatus(_Boundary):
    """Normalized status of a queued, running or finished build."""

    build_id: str
    build_number: str | None = None
    build_type_id: str | None = None
    state: BuildState = "queued"
    status: BuildResult | None = None
    status_text: str | None = None
    percentage_complete: float = 0
    current_stage_text: str | None = None
    branch_name: str | None = None
    web_url: str | None = None
    queued_date: datetime | None = None
    start_date: datetime | None = None
    finish_date: datetime | None = None
    elapsed_seconds: float | None = None
    estimated_total_seconds: float | None = None
    estimated_start_time: datetime | None = None
    queue_position: int | None = None
    wait_reason: str | None = None
    failure_reason: str | None = None
    canceled_by: str | None = None
    canceled_date: datetime | None = None
    test_summary: TestSummary | None = None
    problems: list[BuildProblem] | None = None

    @property
    def is_terminal(self) -> bool:
        """Return True once the build can no longer change state."""
        return self.state in TERMINAL_STATES

    @classmethod
    def from_api(
        cls,
        data: dict[str, Any],
        *,
        include_tests: bool = False,
        include_problems: bool = False,
        now: datetime | None = None,
    ) -> BuildStatus:
        """Normalize a build payload from the builds endpoint."""
        raw_state = data.get("state")
        state: str
        if not raw_state:
            state = "queued"
        elif raw_state == "finished" and data.get("canceled"):
            state = "canceled"
        elif raw_state in ACTIVE_STATES or raw_state in TERMINAL_STATES:
            state = raw_state
        else:
            state = "queued"

        start_date = parse_timestamp(data.get("startDate"))
        finish_date = parse_timestamp(data.get("finishDate"))
        elapsed: float | None = None
        if start_date is not None:
            if finish_date is not None:
                elapsed = float(int((finish_date - start_date).total_seconds()))
            elif state == "running":
                current = now or datetime.now(timezone.utc)
                elapsed = float(int((current - start_date).total_seconds()))

        running_info = data.get("running-info") or {}
        queued_info = data.get("queued-info") or {}

        if state in ("finished", "canceled"):
            percentage = 100.0
        elif state == "queued":
            percentage = 0.0
        else:
            percentage = float(
                data.get("percentageComplete") or running_info.get("percentageComplete") or 0
            )
        if state == "running" and running_info.get("percentageComplete") is not None:
            percentage = float(running_info["percentageComplete"])

        status = data.get("status")
        canceled_info = data.get("canceledInfo") or {}

        test_summary: TestSummary | None = None
        tests = data.get("testOccurrences")
        if include_tests and isinstance(tests, dict):
            test_summary = TestSummary(
                total=tests.get("count") or 0,
                passed=tests.get("passed") or 0,
                failed=tests.get("failed") or 0,
                ignored=tests.get("ignored") or 0,
                muted=tests.get("muted"),
                new_failed=tests.get("newFailed"),
            )

        problems: list[BuildProblem] | None = None
        occurrences = data.get("problemOccurrences")
        if include_problems and isinstance(occurrences, dict):
            problems = [
                BuildProblem(
                    type=p.get("type") or "unknown",
                    identity=p.get("identity") or "unknown",
                    description=p.get("details") or p.get("description") or "",
                )
                for p in as_list(occurrences.get("problemOccurrence"))
                if isinstance(p, dict)
            ]

        return cls(
            build_id=str(data.get("id", "")),
            build_number=data.get("number"),
            build_type_id=data.get("buildTypeId"),
            state=state,  # type: ignore[arg-type]
            status=status if status in ("SUCCESS", "FAILURE", "ERROR", "UNKNOWN") else None,
            status_text=data.get("statusText"),
            percentage_complete=percentage,
            current_stage_text=running_info.get("currentStageText"),
            branch_name=data.get("branchName"),
            web_url=data.get("webUrl"),
            queued_date=parse_timestamp(data.get("queuedDate")),
            start_date=start_date,
            finish_date=finish_date,
            elapsed_seconds=(
                running_info["elapsedSeconds"]
                if running_info.get("elapsedSeconds") is not None
                else elapsed
            ),
            estimated_total_seconds=running_info.get("estimatedTotalSeconds"),
            estimated_start_time=parse_timestamp(queued_info.get("estimatedStartTime")),
            queue_position=queued_info.get("position"),
            failure_reason=data.get("failureReason"),
            canceled_by=(canceled_info.get("user") or {}).get("username"),
            canceled_date=parse_timestamp(canceled_info.get("timestamp")),
            test_summary=test_summary,
            problems=problems,
        )

    @classmethod
    def from_queue_api(cls, data: dict[str, Any]) -> BuildStatus:
        """Normalize a payload from the build queue endpoint."""
        return cls(
            build_id=str(data.get("id", "")),
            build_number=data.get("number"),
            build_type_id=data.get("buildTypeId"),
            state="queued",
            percentage_complete=0,
            branch_name=data.get("branchName"),
            web_url=data.get("webUrl"),
            queued_date=parse_timestamp(data.get("queuedDate")),
            wait_reason=data.get("waitReason"),
        )
