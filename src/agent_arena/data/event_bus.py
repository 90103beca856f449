"""
Event bus for real-time arena updates.

Fans out published events to in-process callbacks and to per-observer
streams, and keeps a bounded replay buffer so reconnecting observers can
catch up on recent history.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Iterable, List, Optional, Set

from .events import ArenaEvent, EventType

logger = logging.getLogger(__name__)

EventCallback = Callable[[ArenaEvent], None]


@dataclass(frozen=True)
class StreamMessage:
    """A message delivered to an observer stream."""
    kind: str  # connected, agent_update, leaderboard, event_replay, event
    data: Any


class EventStream:
    """
    Bounded per-observer queue.

    When the observer falls behind, the oldest queued message is dropped and
    counted, so a slow reader never blocks publishing.
    """

    def __init__(self, bus: 'EventBus', capacity: int):
        self._bus = bus
        self._queue: Deque[StreamMessage] = deque()
        self._capacity = capacity
        self._ready = asyncio.Event()
        self.dropped = 0
        self.closed = False

    def push(self, message: StreamMessage):
        if self.closed:
            return
        if len(self._queue) >= self._capacity:
            self._queue.popleft()
            self.dropped += 1
        self._queue.append(message)
        self._ready.set()

    def get_nowait(self) -> Optional[StreamMessage]:
        if not self._queue:
            return None
        message = self._queue.popleft()
        if not self._queue:
            self._ready.clear()
        return message

    async def get(self, timeout: Optional[float] = None) -> Optional[StreamMessage]:
        """Wait for the next message; returns None on timeout or after close."""
        while not self._queue:
            if self.closed:
                return None
            try:
                await asyncio.wait_for(self._ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        return self.get_nowait()

    def pending(self) -> int:
        return len(self._queue)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._bus._remove_stream(self)
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class EventBus:
    """
    In-process publish/subscribe hub with a replay buffer.

    ``publish`` is synchronous: callbacks run inline and stream queues are
    filled before it returns, so a stream opened between two publishes sees
    neither a gap nor a duplicate.
    """

    def __init__(
        self,
        buffer_size: int = 500,
        subscriber_queue_size: int = 1000,
        unbuffered_types: Iterable[EventType] = (EventType.TICK,),
    ):
        self._buffer: Deque[ArenaEvent] = deque(maxlen=buffer_size)
        self._callbacks: List[EventCallback] = []
        self._streams: Set[EventStream] = set()
        self._unbuffered = frozenset(unbuffered_types)
        self.subscriber_queue_size = subscriber_queue_size
        self.published_count = 0

    def publish(self, event: ArenaEvent):
        self.published_count += 1
        if event.type not in self._unbuffered:
            self._buffer.append(event)

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.type.value}: {e}")

        message = StreamMessage(kind="event", data=event)
        for stream in list(self._streams):
            stream.push(message)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def open_stream(self, preamble: Iterable[StreamMessage] = ()) -> EventStream:
        """
        Open an observer stream.

        The stream receives the preamble messages, then a single replay message
        with the buffered events, then every event published afterwards.
        """
        stream = EventStream(self, max(self.subscriber_queue_size, 1))
        for message in preamble:
            stream.push(message)
        stream.push(StreamMessage(kind="event_replay", data=tuple(self._buffer)))
        self._streams.add(stream)
        logger.info(f"Observer stream opened. Total streams: {len(self._streams)}")
        return stream

    def _remove_stream(self, stream: EventStream):
        if stream in self._streams:
            self._streams.remove(stream)
            logger.info(f"Observer stream closed. Total streams: {len(self._streams)}")

    def get_buffer(self) -> List[ArenaEvent]:
        return list(self._buffer)

    def clear(self):
        self._buffer.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._streams)
