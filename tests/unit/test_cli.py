"""Tests for the build-orchestrator CLI.

Commands run end to end against a QueueClient wired to an
httpx.MockTransport, patched in through ``cli_context.make_client``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from click.testing import CliRunner

from build_orchestrator.cli import cli
from build_orchestrator.client import QueueClient
from build_orchestrator.config import Settings

Handler = Callable[[httpx.Request], httpx.Response]


def _patch_client(handler: Handler) -> Any:
    def make_client(settings: Settings) -> QueueClient:
        client = QueueClient(base_url="http://test")
        client._client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://test"
        )
        return client

    return patch("build_orchestrator.cli_context.make_client", side_effect=make_client)


def _upstream(
    queue: list[dict[str, Any]] | None = None,
    builds: dict[str, httpx.Response] | None = None,
    requests: list[httpx.Request] | None = None,
) -> Handler:
    """Routing handler for a small fake CI server."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        path = request.url.path.removeprefix("/app/rest")
        if path == "/buildQueue" and request.method == "GET":
            return httpx.Response(200, json={"build": queue or []})
        if path == "/buildQueue" and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": 55,
                    "buildTypeId": body["buildType"]["id"],
                    "queued-info": {"position": 2},
                    "webUrl": "http://ci/viewQueued.html?itemId=55",
                },
            )
        if path.startswith("/buildQueue/"):
            return httpx.Response(200)
        if path.startswith("/buildTypes/"):
            return httpx.Response(200, json={"id": "App", "settings": {"property": []}})
        if path.startswith("/builds/"):
            locator = path.removeprefix("/builds/")
            if builds and locator in builds:
                return builds[locator]
            return httpx.Response(404, json={"message": "No build found"})
        if path in ("/builds", "/agents"):
            return httpx.Response(200, json={"count": 1})
        return httpx.Response(404)

    return handler


class TestCliGroup:
    @pytest.fixture
    def runner(self) -> CliRunner:
        return CliRunner()

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("queue", "position", "move-to-top", "reorder", "cancel", "limits", "watch"):
            assert command in result.output

    def test_missing_config_file(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["--config", str(tmp_path / "missing.toml"), "limits", "App"])
        assert result.exit_code == 1
        assert "Error: Settings file not found" in result.output


class TestQueueCommand:
    """Tests for 'queue'."""

    @pytest.fixture
    def runner(self) -> CliRunner:
        return CliRunner()

    def test_queue_build(self, runner: CliRunner) -> None:
        requests: list[httpx.Request] = []
        with _patch_client(_upstream(requests=requests)):
            result = runner.invoke(
                cli, ["queue", "App", "--branch", "main", "-p", "env=prod", "--comment", "nightly"]
            )

        assert result.exit_code == 0, result.output
        assert "Queued build 55 at position 2" in result.output
        post = next(r for r in requests if r.method == "POST")
        assert json.loads(post.content) == {
            "buildType": {"id": "App"},
            "branchName": "main",
            "comment": {"text": "nightly"},
            "properties": {"property": [{"name": "env", "value": "prod"}]},
        }

    def test_invalid_param(self, runner: CliRunner) -> None:
        with _patch_client(_upstream()):
            result = runner.invoke(cli, ["queue", "App", "-p", "novalue"])
        assert result.exit_code == 2
        assert "expected NAME=VALUE" in result.output

    def test_duplicate_dependency(self, runner: CliRunner) -> None:
        requests: list[httpx.Request] = []
        with _patch_client(_upstream(requests=requests)):
            result = runner.invoke(cli, ["queue", "App", "--depends-on", "9", "--depends-on", "9"])
        assert result.exit_code == 1
        assert "Circular dependency detected: 9" in result.output
        assert requests == []

    def test_blank_build_type_reported_as_error(self, runner: CliRunner) -> None:
        requests: list[httpx.Request] = []
        with _patch_client(_upstream(requests=requests)):
            result = runner.invoke(cli, ["queue", " "])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "build_type_id must not be empty or whitespace" in result.output
        assert requests == []

    def test_unparseable_submission_response_posts_once(self, runner: CliRunner) -> None:
        requests: list[httpx.Request] = []
        upstream = _upstream(requests=requests)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST" and request.url.path == "/app/rest/buildQueue":
                requests.append(request)
                return httpx.Response(200, json={"id": 101, "queuedDate": "not-a-date"})
            return upstream(request)

        with _patch_client(handler):
            result = runner.invoke(cli, ["queue", "X"])

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert len([r for r in requests if r.method == "POST"]) == 1

    def test_queue_and_watch(self, runner: CliRunner) -> None:
        builds = {
            "id:55": httpx.Response(
                200, json={"id": 55, "state": "finished", "status": "SUCCESS"}
            )
        }
        with _patch_client(_upstream(builds=builds)):
            result = runner.invoke(cli, ["queue", "App", "--watch"])
        assert result.exit_code == 0, result.output
        assert "Build 55 completed" in result.output


class TestQueueInspection:
    """Tests for 'position', 'move-to-top', 'reorder', 'cancel' and 'limits'."""

    @pytest.fixture
    def runner(self) -> CliRunner:
        return CliRunner()

    def test_position_blocked(self, runner: CliRunner) -> None:
        queue = [{"id": 1}, {"id": 2, "snapshot-dependencies": {"build": [{"id": 1}]}}]
        with _patch_client(_upstream(queue=queue)):
            result = runner.invoke(cli, ["position", "2"])
        assert result.exit_code == 0, result.output
        assert "Build 2: position 2 (blocked by 1)" in result.output

    def test_position_started_build(self, runner: CliRunner) -> None:
        builds = {"id:9": httpx.Response(200, json={"id": 9, "state": "running"})}
        with _patch_client(_upstream(builds=builds)):
            result = runner.invoke(cli, ["position", "9"])
        assert result.exit_code == 0, result.output
        assert "Build 9 has left the queue" in result.output

    def test_position_unknown_build(self, runner: CliRunner) -> None:
        with _patch_client(_upstream()):
            result = runner.invoke(cli, ["position", "9"])
        assert result.exit_code == 1
        assert "Error: Build 9 not found in queue" in result.output

    def test_move_to_top_blocked(self, runner: CliRunner) -> None:
        queue = [{"id": 1}, {"id": 2, "snapshot-dependencies": {"build": [{"id": 1}]}}]
        with _patch_client(_upstream(queue=queue)):
            result = runner.invoke(cli, ["move-to-top", "2"])
        assert result.exit_code == 1
        assert "Error: Build 2 is blocked by builds 1" in result.output

    def test_reorder(self, runner: CliRunner) -> None:
        requests: list[httpx.Request] = []
        queue = [{"id": 1}, {"id": 2}, {"id": 3}]
        with _patch_client(_upstream(queue=queue, requests=requests)):
            result = runner.invoke(cli, ["reorder", "3", "2"])
        assert result.exit_code == 0, result.output
        put = next(r for r in requests if r.method == "PUT")
        assert json.loads(put.content) == {"build": [{"id": 3}, {"id": 2}]}

    def test_cancel(self, runner: CliRunner) -> None:
        requests: list[httpx.Request] = []
        with _patch_client(_upstream(requests=requests)):
            result = runner.invoke(cli, ["cancel", "7", "--comment", "obsolete"])
        assert result.exit_code == 0, result.output
        assert "Canceled build 7" in result.output
        assert requests[0].url.path == "/app/rest/buildQueue/id:7"

    def test_limits(self, runner: CliRunner) -> None:
        with _patch_client(_upstream(queue=[{"id": 1, "buildTypeId": "App"}])):
            result = runner.invoke(cli, ["limits", "App"])
        assert result.exit_code == 0, result.output
        assert "Max concurrent builds: unlimited" in result.output
        assert any(line.split() == ["Queued:", "1"] for line in result.output.splitlines())


class TestWatchCommand:
    """Tests for 'watch'."""

    @pytest.fixture
    def runner(self) -> CliRunner:
        return CliRunner()

    def test_watch_failed_build_exits_2(self, runner: CliRunner) -> None:
        builds = {
            "id:42": httpx.Response(
                200,
                json={"id": 42, "state": "finished", "status": "FAILURE", "statusText": "Boom"},
            )
        }
        with _patch_client(_upstream(builds=builds)):
            result = runner.invoke(cli, ["watch", "42"])
        assert result.exit_code == 2
        assert "Build 42 failed" in result.output

    def test_watch_max_duration_exits_1(self, runner: CliRunner) -> None:
        builds = {
            "id:42": httpx.Response(
                200, json={"id": 42, "state": "running", "running-info": {"percentageComplete": 30}}
            )
        }
        with _patch_client(_upstream(builds=builds)):
            result = runner.invoke(
                cli, ["watch", "42", "--interval", "0.01", "--max-duration", "0.05"]
            )
        assert result.exit_code == 1
        assert "[running] 30%" in result.output
        assert "Stopped watching build 42: maxDurationExceeded" in result.output
