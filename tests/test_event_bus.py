"""Tests for the in-process EventBus: handlers, subscribers, error isolation."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from zox.events import WILDCARD, Event, EventBus

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    event_type: str = "status",
    data: dict | None = None,
    conversation_id: str | None = "conv-1",
) -> Event:
    return Event(type=event_type, data=data or {}, conversation_id=conversation_id)


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    """Core bus mechanics using a real EventBus."""

    @pytest.mark.asyncio
    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("status", handler)
        await bus.start()
        try:
            await bus.emit(_make_event(data={"text": "Thinking..."}))
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].data == {"text": "Thinking..."}
            assert received[0].conversation_id == "conv-1"
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_multiple_handlers_same_event(self):
        bus = EventBus()
        results: list[str] = []

        async def handler_a(event: Event) -> None:
            results.append("a")

        async def handler_b(event: Event) -> None:
            results.append("b")

        bus.on("status", handler_a)
        bus.on("status", handler_b)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert sorted(results) == ["a", "b"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_wildcard_handler_sees_everything(self):
        bus = EventBus()
        seen: list[str] = []

        async def handler(event: Event) -> None:
            seen.append(event.type)

        bus.on(WILDCARD, handler)
        await bus.start()
        try:
            await bus.emit(_make_event("status"))
            await bus.emit(_make_event("stream-chunk"))
            await asyncio.sleep(0.1)
            assert seen == ["status", "stream-chunk"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_crash_bus(self):
        bus = EventBus()
        received: list[Event] = []

        async def bad_handler(event: Event) -> None:
            raise ValueError("boom")

        async def good_handler(event: Event) -> None:
            received.append(event)

        bus.on("status", bad_handler)
        bus.on("stream-end", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event("status"))
            await asyncio.sleep(0.1)
            await bus.emit(_make_event("stream-end"))
            await asyncio.sleep(0.1)
            assert len(received) == 1
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_block_other_handlers(self):
        bus = EventBus()
        results: list[str] = []

        async def bad_handler(event: Event) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: Event) -> None:
            results.append("ok")

        bus.on("status", bad_handler)
        bus.on("status", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert results == ["ok"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        """Not started, so the single slot stays occupied."""
        bus = EventBus(max_queue=1)
        await bus.emit(_make_event("first"))
        assert bus.pending == 1
        await bus.emit(_make_event("second"))
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_stop_drains_remaining_events(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("status", handler)
        await bus.emit(_make_event(data={"n": 1}))
        await bus.emit(_make_event(data={"n": 2}))
        assert bus.pending == 2

        await bus.start()
        await bus.stop()

        assert bus.pending == 0
        assert [e.data["n"] for e in received] == [1, 2]


class TestSubscribers:
    @pytest.mark.asyncio
    async def test_subscriber_gets_events_in_order(self):
        bus = EventBus()
        queue = bus.subscribe()
        await bus.start()
        try:
            for n in range(3):
                await bus.emit(_make_event(data={"n": n}))
            events = [await asyncio.wait_for(queue.get(), 1.0) for _ in range(3)]
            assert [e.data["n"] for e in events] == [0, 1, 2]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        queue = bus.subscribe()
        bus.unsubscribe(queue)
        bus.unsubscribe(queue)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert queue.empty()
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_without_blocking(self):
        bus = EventBus(subscriber_queue=1)
        slow = bus.subscribe()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("status", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert slow.qsize() == 1
            assert len(received) == 2
        finally:
            await bus.stop()


class TestEvent:
    def test_to_dict(self):
        event = _make_event("stream-end", {"reason": "complete"})
        data = event.to_dict()
        assert data["type"] == "stream-end"
        assert data["data"] == {"reason": "complete"}
        assert data["conversation_id"] == "conv-1"
        assert datetime.fromisoformat(data["timestamp"]) == event.timestamp
