"""Tests for the event bus (driftwatch/services/event_bus.py)."""

import asyncio

import pytest

from driftwatch.services.event_bus import (
    CONTAINER_REPORT,
    TRIGGER_WATCH_REQUEST,
    WATCHER_STOP,
    EventBus,
    WatcherEvent,
    WatchRequest,
)


class TestEventBus:
    """Tests for publish/subscribe."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_order(self):
        bus = EventBus()
        calls = []

        async def second(payload):
            calls.append(("second", payload))

        bus.subscribe(CONTAINER_REPORT, second, order=200)
        bus.subscribe(CONTAINER_REPORT, lambda payload: calls.append(("first", payload)), order=10)

        await bus.publish(CONTAINER_REPORT, "report")
        assert calls == [("first", "report"), ("second", "report")]

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        bus = EventBus()
        calls = []

        def failing(payload):
            raise RuntimeError("boom")

        bus.subscribe(CONTAINER_REPORT, failing)
        bus.subscribe(CONTAINER_REPORT, calls.append)

        await bus.publish(CONTAINER_REPORT, 1)
        assert calls == [1]

    def test_unknown_topic(self):
        with pytest.raises(ValueError):
            EventBus().subscribe("not-a-topic", print)

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        calls = []
        subscription = bus.subscribe(CONTAINER_REPORT, calls.append)
        bus.unsubscribe(subscription)

        await bus.publish(CONTAINER_REPORT, 1)
        assert calls == []
        assert bus.subscriber_count(CONTAINER_REPORT) == 0


class TestWaitFor:
    """Tests for request/response waits."""

    @pytest.mark.asyncio
    async def test_matching_payload(self):
        bus = EventBus()

        async def answer(request: WatchRequest):
            await bus.publish(WATCHER_STOP, WatcherEvent("local", "other"))
            await bus.publish(WATCHER_STOP, WatcherEvent("local", request.request_id))

        bus.subscribe(TRIGGER_WATCH_REQUEST, answer)

        async def request():
            await bus.publish(TRIGGER_WATCH_REQUEST, WatchRequest("req-1", "local"))

        event = await bus.wait_for(
            WATCHER_STOP,
            lambda e: e.request_id == "req-1",
            timeout=1,
            after_subscribe=request,
        )
        assert event.request_id == "req-1"
        assert bus.subscriber_count(WATCHER_STOP) == 0

    @pytest.mark.asyncio
    async def test_timeout_removes_listener(self):
        bus = EventBus()
        with pytest.raises(asyncio.TimeoutError):
            await bus.wait_for(WATCHER_STOP, lambda e: True, timeout=0.05)
        assert bus.subscriber_count(WATCHER_STOP) == 0
