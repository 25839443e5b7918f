"""Outbound event delivery.

The relay hands every outbound event to a Transport and never waits on it.

Architecture:
    - Transport ABC defines the interface the relay talks to
    - RecordingTransport keeps frames in memory (tests, embedding)
    - QueueTransport gives each connection an asyncio.Queue that a writer
      task drains into the socket, so a slow client never blocks a handler
      and each connection sees frames in the order they were emitted
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Sink for outbound events, addressed by connection id."""

    @abstractmethod
    def send(self, connection_id: str, event: str, data: Any) -> None:
        """Queue one event for one connection. Must not block.

        Args:
            connection_id: Target connection
            event: Outbound event name (e.g. "message", "userCount")
            data: JSON-serializable payload
        """

    def broadcast(self, connection_ids: Iterable[str], event: str, data: Any) -> None:
        """Queue the same event for several connections."""
        for connection_id in connection_ids:
            self.send(connection_id, event, data)


class RecordingTransport(Transport):
    """In-memory transport that records every frame per connection."""

    def __init__(self) -> None:
        self.frames: dict[str, list[tuple[str, Any]]] = defaultdict(list)

    def send(self, connection_id: str, event: str, data: Any) -> None:
        self.frames[connection_id].append((event, data))

    def events(self, connection_id: str, event: str | None = None) -> list[Any]:
        """Payloads sent to a connection, optionally filtered by event name."""
        return [d for e, d in self.frames.get(connection_id, []) if event is None or e == event]

    def names(self, connection_id: str) -> list[str]:
        """Event names sent to a connection, in order."""
        return [e for e, _ in self.frames.get(connection_id, [])]

    def last(self, connection_id: str, event: str) -> Any:
        payloads = self.events(connection_id, event)
        return payloads[-1] if payloads else None

    def clear(self, connection_id: str | None = None) -> None:
        if connection_id is None:
            self.frames.clear()
        else:
            self.frames.pop(connection_id, None)


class QueueTransport(Transport):
    """Per-connection outbound queues for socket writer tasks.

    All methods must be called from the event loop that owns the queues.
    """

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[dict[str, Any] | None]] = {}

    def register(self, connection_id: str) -> asyncio.Queue[dict[str, Any] | None]:
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._queues[connection_id] = queue
        return queue

    def unregister(self, connection_id: str) -> None:
        """Stop delivery to a connection; its writer exits after flushing."""
        queue = self._queues.pop(connection_id, None)
        if queue is not None:
            queue.put_nowait(None)

    def send(self, connection_id: str, event: str, data: Any) -> None:
        queue = self._queues.get(connection_id)
        if queue is None:
            logger.debug("Dropping %s for closed connection %s", event, connection_id)
            return
        queue.put_nowait({"event": event, "data": data})

    def __len__(self) -> int:
        return len(self._queues)


async def pump(
    queue: asyncio.Queue[dict[str, Any] | None],
    send: Callable[[dict[str, Any]], Awaitable[None]],
) -> int:
    """Drain a connection queue into `send` until the stop sentinel.

    Returns the number of frames delivered. A failing `send` (closed socket)
    ends the pump; remaining frames are dropped.
    """
    delivered = 0
    while True:
        frame = await queue.get()
        if frame is None:
            return delivered
        try:
            await send(frame)
        except Exception as e:
            logger.debug("Failed to deliver frame: %s", e)
            return delivered
        delivered += 1
