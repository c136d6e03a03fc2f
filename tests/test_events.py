"""Tests for the in-process EventBus."""

from __future__ import annotations

import asyncio

from pagecraft.events.bus import EventBus, PagecraftEvent


class TestEventBus:
    def test_sync_handler_called_inline(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe(PagecraftEvent.CHAT_STATUS, lambda e, p: seen.append((e, p)))
        bus.publish(PagecraftEvent.CHAT_STATUS, {"session_id": "s", "status": "started"})
        bus.publish(PagecraftEvent.SESSION_DELETED, {"session_id": "s"})
        assert seen == [(PagecraftEvent.CHAT_STATUS, {"session_id": "s", "status": "started"})]

    def test_subscribe_all_and_unsubscribe(self) -> None:
        bus = EventBus()
        seen = []

        def handler(event, payload):
            seen.append(event)

        bus.subscribe_all(handler)
        bus.subscribe(PagecraftEvent.TURN_STARTED, handler)
        bus.publish(PagecraftEvent.TURN_STARTED, {})
        bus.unsubscribe(PagecraftEvent.TURN_STARTED, handler)
        bus.unsubscribe(PagecraftEvent.TURN_UNDONE, handler)
        bus.publish(PagecraftEvent.TURN_STARTED, {})
        assert seen == [PagecraftEvent.TURN_STARTED] * 3

    def test_handler_errors_do_not_propagate(self) -> None:
        bus = EventBus()
        seen = []

        def broken(event, payload):
            raise RuntimeError("handler down")

        bus.subscribe(PagecraftEvent.SESSION_CREATED, broken)
        bus.subscribe(PagecraftEvent.SESSION_CREATED, lambda e, p: seen.append(p))
        bus.publish(PagecraftEvent.SESSION_CREATED, {"new_session_id": "n"})
        assert seen == [{"new_session_id": "n"}]

    async def test_async_handler_scheduled(self) -> None:
        bus = EventBus()
        done = asyncio.Event()

        async def handler(event, payload):
            done.set()

        bus.subscribe(PagecraftEvent.VERSION_COMMITTED, handler)
        bus.publish(PagecraftEvent.VERSION_COMMITTED, {"session_id": "s", "version": 1})
        await asyncio.wait_for(done.wait(), timeout=1)

    async def test_drain_waits_for_async_handlers(self) -> None:
        bus = EventBus()
        seen = []

        async def slow(event, payload):
            await asyncio.sleep(0.01)
            seen.append(payload["version"])

        async def failing(event, payload):
            raise RuntimeError("late failure")

        bus.subscribe(PagecraftEvent.VERSION_COMMITTED, slow)
        bus.subscribe(PagecraftEvent.VERSION_COMMITTED, failing)
        bus.publish(PagecraftEvent.VERSION_COMMITTED, {"session_id": "s", "version": 2})
        await bus.drain()
        assert seen == [2]

    def test_async_handler_without_loop_is_skipped(self) -> None:
        bus = EventBus()
        calls = []

        async def handler(event, payload):
            calls.append(payload)

        bus.subscribe(PagecraftEvent.CHAT_STATUS, handler)
        bus.publish(PagecraftEvent.CHAT_STATUS, {"session_id": "s"})
        assert calls == []
