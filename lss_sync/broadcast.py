# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Live Broadcaster

Fans events out to all connected subscribers.

Each subscriber owns a bounded queue. ``publish`` writes to every queue
without awaiting, so all subscribers see events in the same order and a
slow consumer cannot hold up the others: once its queue is full it is
dropped. Late subscribers get no replay.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from itertools import count
from typing import Any, Protocol

from lss_sync.config import settings
from lss_sync.events import EventType, LiveEvent
from lss_sync.metrics import metrics

logger = logging.getLogger(__name__)

_sink_ids = count(1)


class SinkClosedError(Exception):
    """Raised when writing to a closed sink."""


class EventSink(Protocol):
    def send(self, event: LiveEvent) -> None: ...


class QueueSink:
    """A subscriber connection backed by a bounded queue."""

    _CLOSE = object()

    def __init__(self, maxsize: int = 100) -> None:
        self.id = next(_sink_ids)
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send(self, event: LiveEvent) -> None:
        """
        Queue an event without waiting.

        Raises:
            SinkClosedError: if the sink was closed
            asyncio.QueueFull: if the consumer fell behind
        """
        if self._closed:
            raise SinkClosedError(f"Sink {self.id} is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Close the sink; a waiting consumer stops after this call."""
        if self._closed:
            return
        self._closed = True
        # Pending events are discarded so the close marker always fits
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSE)

    async def events(self) -> AsyncIterator[LiveEvent]:
        """Yield queued events until the sink is closed."""
        while True:
            item = await self._queue.get()
            if item is self._CLOSE:
                return
            yield item

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued events as SSE frames."""
        async for event in self.events():
            yield event.to_sse()


class Broadcaster:
    """
    Publish/subscribe hub for live updates.

    Features:
    - ``connected`` event queued for every new subscriber
    - Heartbeat with the current subscriber count
    - Per-sink error boundary: a failing sink is removed, others continue
    - Relays (e.g. Redis) receive all events without counting as subscribers
    """

    def __init__(
        self,
        heartbeat_interval: float | None = None,
        queue_size: int | None = None,
    ) -> None:
        """
        Initialize the broadcaster.

        Args:
            heartbeat_interval: Seconds between heartbeats. Defaults to settings.
            queue_size: Events buffered per subscriber. Defaults to settings.
        """
        self.heartbeat_interval = heartbeat_interval or settings.sse_heartbeat_seconds
        self.queue_size = queue_size or settings.sse_queue_size
        self._subscribers: dict[int, QueueSink] = {}
        self._relays: list[EventSink] = []
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ========== Subscriptions ==========

    def subscribe(self) -> QueueSink:
        """Register a new subscriber and queue its ``connected`` event."""
        sink = QueueSink(maxsize=self.queue_size)
        self._subscribers[sink.id] = sink
        sink.send(LiveEvent.create(EventType.CONNECTED, {"message": "Connected to live updates"}))
        metrics.set_subscribers(self.subscriber_count)
        logger.info("Subscriber %d connected (%d total)", sink.id, self.subscriber_count)
        return sink

    def unsubscribe(self, sink: QueueSink) -> None:
        """Remove and close a subscriber."""
        if self._subscribers.pop(sink.id, None) is not None:
            logger.info("Subscriber %d disconnected (%d total)", sink.id, self.subscriber_count)
        sink.close()
        metrics.set_subscribers(self.subscriber_count)

    def attach(self, relay: EventSink) -> None:
        """Forward all events to a relay."""
        self._relays.append(relay)

    def detach(self, relay: EventSink) -> None:
        if relay in self._relays:
            self._relays.remove(relay)

    # ========== Publishing ==========

    def publish(self, event_type: EventType | str, payload: dict[str, Any] | None = None) -> int:
        """
        Deliver an event to every subscriber and relay.

        Returns:
            Number of subscribers the event was delivered to
        """
        event = LiveEvent.create(event_type, payload)
        delivered = 0

        for sink in list(self._subscribers.values()):
            try:
                sink.send(event)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping subscriber %d: %s", sink.id, str(e) or type(e).__name__)
                metrics.record_sink_dropped()
                self.unsubscribe(sink)

        for relay in list(self._relays):
            try:
                relay.send(event)
            except Exception as e:
                logger.warning("Detaching relay %r: %s", relay, e)
                self.detach(relay)

        metrics.record_event(event.event)
        return delivered

    # ========== Heartbeat ==========

    async def start(self) -> None:
        """Start the heartbeat task."""
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="sse-heartbeat")

    async def stop(self) -> None:
        """Stop the heartbeat and close all subscribers."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for sink in list(self._subscribers.values()):
            self.unsubscribe(sink)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.publish(EventType.HEARTBEAT, {"clients": self.subscriber_count})
