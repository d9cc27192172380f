"""Tests for the event emitter."""

from __future__ import annotations

import asyncio
import logging

import pytest

from build_orchestrator.events import ErrorEvent, EventEmitter, EventName, EventSubscription


class TestEventEmitter:
    """Callback registration and dispatch."""

    def test_on_and_emit(self) -> None:
        emitter = EventEmitter()
        received: list[str] = []
        emitter.on(EventName.QUEUED, received.append)

        emitter.emit(EventName.QUEUED, "a")
        emitter.emit("queued", "b")

        assert received == ["a", "b"]

    def test_off(self) -> None:
        emitter = EventEmitter()
        listener = emitter.on(EventName.ERROR, lambda _p: None)

        assert emitter.listener_count(EventName.ERROR) == 1
        assert emitter.off(EventName.ERROR, listener) is True
        assert emitter.off(EventName.ERROR, listener) is False
        assert emitter.listener_count(EventName.ERROR) == 0

    def test_listener_exception_is_logged_and_isolated(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        emitter = EventEmitter()
        received: list[int] = []

        def broken(_payload: int) -> None:
            raise ValueError("bad listener")

        emitter.on(EventName.PROGRESS, broken)
        emitter.on(EventName.PROGRESS, received.append)

        with caplog.at_level(logging.ERROR, logger="build_orchestrator.events"):
            emitter.emit(EventName.PROGRESS, 1)

        assert received == [1]
        assert "bad listener" in caplog.text

    def test_listener_may_unregister_itself(self) -> None:
        emitter = EventEmitter()
        calls: list[int] = []

        def once(payload: int) -> None:
            calls.append(payload)
            emitter.off(EventName.RETRY, once)

        emitter.on(EventName.RETRY, once)
        emitter.emit(EventName.RETRY, 1)
        emitter.emit(EventName.RETRY, 2)

        assert calls == [1]

    def test_emit_after_close_is_dropped(self) -> None:
        emitter = EventEmitter()
        received: list[int] = []
        emitter.on(EventName.PROGRESS, received.append)

        emitter.close()
        emitter.emit(EventName.PROGRESS, 1)

        assert emitter.closed
        assert received == []

    def test_error_event_message(self) -> None:
        assert ErrorEvent(error=RuntimeError("boom")).message == "boom"


class TestSubscriptions:
    """Async iteration over emitted events."""

    async def test_subscription_receives_until_close(self) -> None:
        emitter = EventEmitter()
        subscription = emitter.subscribe()

        emitter.emit(EventName.QUEUED, 1)
        emitter.emit(EventName.STARTED, 2)
        emitter.close()

        assert [item async for item in subscription] == [("queued", 1), ("started", 2)]

    async def test_subscribe_after_close_ends_immediately(self) -> None:
        emitter = EventEmitter()
        emitter.close()
        assert [item async for item in emitter.subscribe()] == []

    async def test_closed_subscription_stops_receiving(self) -> None:
        emitter = EventEmitter()
        subscription = emitter.subscribe()
        subscription.close()

        emitter.emit(EventName.QUEUED, 1)

        items = await asyncio.wait_for(_drain(subscription), timeout=1)
        assert items == []


async def _drain(subscription: EventSubscription) -> list[tuple[str, object]]:
    return [item async for item in subscription]
