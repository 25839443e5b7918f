"""Replay of buffered history to newly admitted sessions."""

from __future__ import annotations

import logging

from .protocol import MESSAGE, MessageEntry
from .rooms import Room
from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_LIMIT = 20


class HistoryReplay:
    """Sends the newest entries of a room's history to one connection.

    Replayed entries are ordinary `message` events. They reach the joiner
    before anything broadcast after the join, so order alone tells them
    apart from live traffic.
    """

    def __init__(self, transport: Transport, limit: int = DEFAULT_REPLAY_LIMIT) -> None:
        if limit < 0:
            raise ValueError(f"Invalid replay limit: {limit}")
        self.transport = transport
        self.limit = limit

    def entries_for(self, room: Room) -> list[MessageEntry]:
        return room.history.recent(self.limit)

    def replay(self, room: Room, connection_id: str) -> int:
        """Deliver history to `connection_id`. Returns the number of entries sent."""
        entries = self.entries_for(room)
        for entry in entries:
            self.transport.send(connection_id, MESSAGE, entry.to_wire())
        if entries:
            logger.debug(f"Replayed {len(entries)} entries of room {room.room_id} to {connection_id}")
        return len(entries)
