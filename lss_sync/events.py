# SPDX-License-Identifier: AGPL-3.0-or-later
"""
Live Event Types and Redis Relay

Events published by the broadcaster. Every payload carries an ISO-8601
``timestamp`` set at emission time.

Event Types:
- connected - sent once to a new subscriber
- heartbeat - periodic keepalive with the subscriber count
- incident - a single mission was created or updated
- batch - several missions changed in one cycle
- deleted - missions disappeared from the game
- alliance_stats - new alliance stat point with its 24h change
- members - alliance member list and counts

The Redis relay forwards every event to a pub/sub channel so other
services can follow the live stream without an SSE connection.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as redis
from rich.console import Console

from lss_sync.config import settings

logger = logging.getLogger(__name__)
console = Console()


class EventType(str, Enum):
    """Live event names (SSE ``event:`` field)."""

    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    INCIDENT = "incident"
    BATCH = "batch"
    DELETED = "deleted"
    ALLIANCE_STATS = "alliance_stats"
    MEMBERS = "members"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LiveEvent:
    """One event as delivered to every sink."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, event: EventType | str, payload: dict[str, Any] | None = None) -> "LiveEvent":
        """Build an event and stamp its payload with the emission time."""
        name = event.value if isinstance(event, EventType) else event
        data = dict(payload or {})
        data["timestamp"] = _timestamp()
        return cls(event=name, data=data)

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps({"event": self.event, "data": self.data}, default=str)

    def to_sse(self) -> str:
        """Format as a server-sent events frame."""
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"


class RedisRelay:
    """
    Forwards live events to Redis Pub/Sub.

    Publishing happens in a background task so ``send`` never blocks the
    broadcaster. A failing Redis only produces warnings.

    Usage:
        async with RedisRelay() as relay:
            broadcaster.attach(relay)
    """

    CHANNEL = "lss:events"

    def __init__(
        self,
        redis_url: str | None = None,
        enabled: bool = True,
        channel: str | None = None,
        maxsize: int = 1000,
    ) -> None:
        """
        Initialize the relay.

        Args:
            redis_url: Redis connection URL (default from settings)
            enabled: Whether to relay events (can be disabled for testing)
            channel: Pub/Sub channel name
            maxsize: Events buffered while Redis is slow
        """
        self.redis_url = redis_url or settings.redis_url
        self.enabled = enabled and settings.events_enabled
        self.channel = channel or self.CHANNEL
        self._client: redis.Redis | None = None
        self._queue: asyncio.Queue[LiveEvent] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "RedisRelay":
        """Connect to Redis and start publishing."""
        if self.enabled:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._client.ping()
                console.print("[dim]Event relay connected to Redis[/dim]")
            except Exception as e:
                console.print(f"[yellow]Event relay disabled: {e}[/yellow]")
                self.enabled = False
                self._client = None

        if self.enabled:
            self._task = asyncio.create_task(self._publish_loop(), name="redis-relay")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Stop publishing and close the connection."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def send(self, event: LiveEvent) -> None:
        """Queue an event for publishing."""
        if not self.enabled:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Redis relay backlog full, dropping %s event", event.event)

    async def _publish_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._publish(event)
            finally:
                self._queue.task_done()

    async def _publish(self, event: LiveEvent) -> None:
        """Publish event to the Redis channel."""
        if self._client is None:
            return
        try:
            await self._client.publish(self.channel, event.to_json())
        except Exception as e:
            logger.warning("Failed to relay %s event: %s", event.event, e)
