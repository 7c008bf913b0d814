"""
Asyncio event bus for a single conduit process.

Handlers are awaited one after another, in subscription order, inside
``publish``; a handler that raises is logged and skipped. Streams are
fed with ``put_nowait`` on a bounded queue, evicting the oldest event
when the reader falls behind.

Tags:
    conduit-core, events, asyncio, backpressure
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from conduit.core.events import Event, EventFilter, EventHandler
from conduit.core.logging import get_logger
from conduit.core.timestamps import new_id

__all__ = ["InMemoryEventBus", "QueueEventStream"]

logger = get_logger(__name__)

DEFAULT_STREAM_BUFFER = 100
# Log the first drop, then every Nth, per stream.
_DROP_LOG_EVERY = 100


class QueueEventStream:
    """Events for one external reader, at most ``maxsize`` buffered."""

    def __init__(
        self,
        bus: InMemoryEventBus,
        subscription_id: str,
        pattern: str,
        predicate: EventFilter | None,
        maxsize: int,
    ) -> None:
        self.subscription_id = subscription_id
        self.pattern = pattern
        self.predicate = predicate
        self.dropped = 0
        self._bus = bus
        self._buffer: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def wants(self, event: Event) -> bool:
        return event.matches(self.pattern) and (self.predicate is None or self.predicate(event))

    def offer(self, event: Event) -> None:
        if self._closed:
            return
        if self._buffer.full():
            self._buffer.get_nowait()
            self.dropped += 1
            if self.dropped % _DROP_LOG_EVERY == 1:
                logger.warning("stream_events_dropped", subscription_id=self.subscription_id, dropped=self.dropped)
        self._buffer.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Event | None:
        if timeout is None:
            return await self._buffer.get()
        try:
            return await asyncio.wait_for(self._buffer.get(), timeout=timeout)
        except TimeoutError:
            return None

    def pending(self) -> int:
        return self._buffer.qsize()

    async def __aiter__(self) -> AsyncIterator[Event]:
        while not self._closed:
            yield await self._buffer.get()

    async def close(self) -> None:
        self._closed = True
        await self._bus.unsubscribe(self.subscription_id)


class InMemoryEventBus:
    def __init__(self, stream_buffer_size: int = DEFAULT_STREAM_BUFFER) -> None:
        self._handlers: dict[str, tuple[str, EventHandler]] = {}
        self._streams: dict[str, QueueEventStream] = {}
        self._stream_buffer_size = stream_buffer_size
        self._lock = asyncio.Lock()
        self._closed = False

    async def publish(self, event: Event) -> None:
        if self._closed:
            return
        async with self._lock:
            handlers = [
                (sub_id, handler)
                for sub_id, (pattern, handler) in self._handlers.items()
                if event.matches(pattern)
            ]
            streams = [stream for stream in self._streams.values() if stream.wants(event)]

        for stream in streams:
            stream.offer(event)
        for sub_id, handler in handlers:
            try:
                await handler(event)
            except Exception as exc:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    error=str(exc),
                )

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        sub_id = new_id("sub")
        async with self._lock:
            self._handlers[sub_id] = (event_type, handler)
        return sub_id

    async def open_stream(
        self,
        event_type: str = "*",
        predicate: EventFilter | None = None,
        maxsize: int | None = None,
    ) -> QueueEventStream:
        stream = QueueEventStream(
            self,
            new_id("str"),
            event_type,
            predicate,
            maxsize or self._stream_buffer_size,
        )
        async with self._lock:
            self._streams[stream.subscription_id] = stream
        return stream

    async def unsubscribe(self, subscription_id: str) -> None:
        async with self._lock:
            if self._handlers.pop(subscription_id, None) is None:
                self._streams.pop(subscription_id, None)

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            self._handlers.clear()
            self._streams.clear()

    @property
    def subscription_count(self) -> int:
        """Handlers plus open streams."""
        return len(self._handlers) + len(self._streams)
