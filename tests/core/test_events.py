"""Tests for events and the in-memory event bus."""

from __future__ import annotations

import asyncio

import pytest

from conduit.core.events import Event, EventTypes
from conduit.core.events.memory import InMemoryEventBus


def _event(event_type: str = "execution.started", **payload) -> Event:
    return Event(event_type=event_type, source="test", payload=payload)


class TestEventMatching:
    """Pattern matching on event types."""

    def test_wildcard(self):
        """'*' matches everything."""
        assert _event("anything.at_all").matches("*")

    def test_prefix(self):
        """'execution.*' matches execution events only."""
        assert _event(EventTypes.EXECUTION_COMPLETED).matches("execution.*")
        assert not _event(EventTypes.STEP_COMPLETED).matches("execution.*")
        assert not _event("executionx.started").matches("execution.*")

    def test_exact(self):
        """Plain patterns match exactly."""
        assert _event("step.completed").matches("step.completed")
        assert not _event("step.completed").matches("step.failed")

    def test_payload_ids(self):
        """workflow_id and execution_id come from the payload."""
        event = _event(workflow_id="wf", execution_id="exe_1")
        assert event.workflow_id == "wf"
        assert event.execution_id == "exe_1"
        assert event.to_dict()["payload"]["workflow_id"] == "wf"


class TestInMemoryEventBus:
    """Handler subscriptions."""

    @pytest.mark.asyncio
    async def test_publish_to_matching_handlers(self, bus):
        """Handlers run inline for matching events."""
        received: list[str] = []

        async def handler(event: Event) -> None:
            received.append(event.event_type)

        await bus.subscribe("execution.*", handler)
        await bus.publish(_event("execution.started"))
        await bus.publish(_event("step.started"))
        assert received == ["execution.started"]

    @pytest.mark.asyncio
    async def test_handler_error_isolated(self, bus):
        """A failing handler does not stop other handlers or the producer."""
        received: list[str] = []

        async def broken(event: Event) -> None:
            raise RuntimeError("boom")

        async def healthy(event: Event) -> None:
            received.append(event.event_type)

        await bus.subscribe("*", broken)
        await bus.subscribe("*", healthy)
        await bus.publish(_event())
        assert received == ["execution.started"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        """Unsubscribed handlers stop receiving."""
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        sub_id = await bus.subscribe("*", handler)
        assert sub_id.startswith("sub_")
        await bus.unsubscribe(sub_id)
        await bus.publish(_event())
        assert received == []
        assert bus.subscription_count == 0

    @pytest.mark.asyncio
    async def test_closed_bus_drops_events(self, bus):
        """Publishing after close is a no-op."""
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        await bus.subscribe("*", handler)
        await bus.close()
        await bus.publish(_event())
        assert received == []


class TestEventStreams:
    """Bounded subscriber streams."""

    @pytest.mark.asyncio
    async def test_stream_receives_in_order(self, bus):
        """Events arrive in publish order."""
        stream = await bus.open_stream("step.*")
        for i in range(3):
            await bus.publish(_event("step.completed", n=i))
        await bus.publish(_event("execution.started"))
        got = [await stream.get(timeout=0.1) for _ in range(3)]
        assert [e.payload["n"] for e in got] == [0, 1, 2]
        assert stream.pending() == 0

    @pytest.mark.asyncio
    async def test_full_stream_drops_oldest(self):
        """A slow reader loses its oldest events, never blocks the producer."""
        bus = InMemoryEventBus(stream_buffer_size=2)
        stream = await bus.open_stream()
        for i in range(5):
            await bus.publish(_event(n=i))
        assert stream.dropped == 3
        first = await stream.get(timeout=0.1)
        second = await stream.get(timeout=0.1)
        assert [first.payload["n"], second.payload["n"]] == [3, 4]

    @pytest.mark.asyncio
    async def test_predicate_filters(self, bus):
        """Stream predicates scope delivery."""
        stream = await bus.open_stream(predicate=lambda e: e.workflow_id == "wf-a")
        await bus.publish(_event(workflow_id="wf-b"))
        await bus.publish(_event(workflow_id="wf-a"))
        event = await stream.get(timeout=0.1)
        assert event.workflow_id == "wf-a"
        assert stream.pending() == 0

    @pytest.mark.asyncio
    async def test_get_timeout_returns_none(self, bus):
        """get() returns None when nothing arrives."""
        stream = await bus.open_stream()
        assert await stream.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, bus):
        """Closing a stream removes it from the bus."""
        stream = await bus.open_stream()
        assert bus.subscription_count == 1
        await stream.close()
        assert bus.subscription_count == 0
        await bus.publish(_event())
        assert stream.pending() == 0

    @pytest.mark.asyncio
    async def test_slow_consumer_does_not_block_publisher(self):
        """Publishing completes promptly with an unread stream."""
        bus = InMemoryEventBus(stream_buffer_size=1)
        await bus.open_stream()

        async def burst() -> None:
            for i in range(100):
                await bus.publish(_event(n=i))

        await asyncio.wait_for(burst(), timeout=1.0)
