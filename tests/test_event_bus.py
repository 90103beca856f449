"""
Tests for the arena event model and the event bus.
"""

import asyncio

import pytest

from agent_arena.data.event_bus import EventBus, StreamMessage
from agent_arena.data.events import (
    AgentActivityPayload,
    EventType,
    Importance,
    TickPayload,
    TradeOpenPayload,
    create_event,
)


def wait_event(title: str = "waits"):
    return create_event(
        EventType.AGENT_WAIT,
        AgentActivityPayload(action="hold", activity="waiting"),
        title=title,
        agent_id="agent-1",
        agent_name="The Knife",
        timestamp=1.0,
    )


def tick_event(tick: int = 1):
    return create_event(
        EventType.TICK,
        TickPayload(tick=tick, elapsed_ms=0, price_stale=False, agents=(), rankings=()),
        title=f"Round {tick}",
        importance=Importance.LOW,
    )


class TestCreateEvent:
    """Event construction."""

    def test_payload_type_must_match(self):
        """A trade_open event cannot carry an activity payload."""
        with pytest.raises(TypeError):
            create_event(EventType.TRADE_OPEN, AgentActivityPayload(action="hold", activity="x"), title="bad")

    def test_to_dict_flattens_payload(self):
        """Serialized events carry enum values and a payload dict."""
        event = create_event(
            EventType.TRADE_OPEN,
            TradeOpenPayload(
                side="long", size_pct=10, margin=100, volume=1000, entry_price=1.0,
                leverage=10, liquidation_price=0.905, fees=2.8,
            ),
            title="The Knife opens long",
            importance=Importance.MEDIUM,
            commentary="Quick long.",
        )

        data = event.to_dict()

        assert data["type"] == "trade_open"
        assert data["importance"] == "medium"
        assert data["payload"]["liquidation_price"] == 0.905
        assert data["commentary"] == "Quick long."
        assert len(data["id"]) == 12

    def test_ids_are_unique(self):
        assert wait_event().id != wait_event().id


class TestEventBus:
    """Publish, buffer and fan-out."""

    def test_buffer_keeps_recent_events(self):
        """The replay buffer is bounded and keeps the newest events."""
        bus = EventBus(buffer_size=3)
        events = [wait_event(str(i)) for i in range(5)]

        for event in events:
            bus.publish(event)

        assert [e.title for e in bus.get_buffer()] == ["2", "3", "4"]
        assert bus.published_count == 5

    def test_ticks_are_not_buffered(self):
        """Tick events go live only."""
        bus = EventBus()

        bus.publish(tick_event())
        bus.publish(wait_event())

        assert [e.type for e in bus.get_buffer()] == [EventType.AGENT_WAIT]

    def test_failing_callback_does_not_stop_delivery(self):
        """One broken subscriber cannot starve the others."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(wait_event())

        assert len(seen) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)

        unsubscribe()
        bus.publish(wait_event())

        assert seen == []
        assert bus.subscriber_count == 0


class TestEventStream:
    """Observer streams."""

    def test_stream_order_is_preamble_replay_live(self):
        """Preamble first, then one replay of the buffer, then live events."""
        bus = EventBus()
        old = wait_event("old")
        bus.publish(old)

        stream = bus.open_stream([StreamMessage(kind="connected", data={"status": "running"})])
        new = wait_event("new")
        bus.publish(new)

        kinds = []
        while stream.pending():
            kinds.append(stream.get_nowait())
        assert [m.kind for m in kinds] == ["connected", "event_replay", "event"]
        assert kinds[1].data == (old,)
        assert kinds[2].data is new

    def test_slow_stream_drops_oldest(self):
        """A full queue drops its oldest message and counts it."""
        bus = EventBus(subscriber_queue_size=2)
        stream = bus.open_stream()

        for i in range(3):
            bus.publish(wait_event(str(i)))

        assert stream.dropped == 2
        remaining = [stream.get_nowait().data.title for _ in range(stream.pending())]
        assert remaining == ["1", "2"]

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self):
        """get() wakes up when an event arrives."""
        bus = EventBus()
        stream = bus.open_stream()
        stream.get_nowait()

        async def publish_later():
            await asyncio.sleep(0.01)
            bus.publish(wait_event("late"))

        asyncio.create_task(publish_later())
        message = await stream.get(timeout=1.0)

        assert message.kind == "event"
        assert message.data.title == "late"

    @pytest.mark.asyncio
    async def test_get_times_out_with_none(self):
        """An idle stream returns None after the timeout."""
        bus = EventBus()
        stream = bus.open_stream()
        stream.get_nowait()

        assert await stream.get(timeout=0.01) is None

    def test_closed_stream_stops_receiving(self):
        """Closing detaches the stream from the bus."""
        bus = EventBus()
        stream = bus.open_stream()

        stream.close()
        bus.publish(wait_event())

        assert stream.closed
        assert bus.subscriber_count == 0
        assert stream.pending() == 1  # only the replay
