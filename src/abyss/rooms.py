"""Room state: sessions, rooms, the room registry and the session index.

All of this is process memory. Nothing survives a restart and nothing
survives a room going empty: a room is created by its first joiner and
destroyed the moment its last member leaves. A later join to the same id
creates a brand-new room with a new secret and a new creator.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator

from .protocol import MessageEntry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 50

USER_COLORS = [
    "#FF5733",
    "#33FF57",
    "#3357FF",
    "#FF33EE",
    "#FFBD33",
    "#33FFEE",
    "#EE33FF",
    "#80FF33",
    "#3380FF",
    "#FF3380",
]

SHORT_ID_ALPHABET = string.ascii_lowercase + string.digits
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_short_id(length: int = 4) -> str:
    """Generate a short id that disambiguates equal display names."""
    return "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(length))


def generate_room_code(length: int = 6) -> str:
    """Generate a random uppercase alphanumeric room code."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def pick_color() -> str:
    return secrets.choice(USER_COLORS)


def hash_room_secret(secret: str) -> str:
    """Hash a room secret for storage/comparison. Returns full SHA-256."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


@dataclass
class Session:
    """One connection's live participation in a room."""

    connection_id: str
    username: str
    room_id: str
    unique_id: str = field(default_factory=generate_short_id)
    color: str = field(default_factory=pick_color)
    is_typing: bool = False


class HistoryBuffer:
    """Bounded FIFO of message entries; the oldest entry is evicted first."""

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self._entries: deque[MessageEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, entry: MessageEntry) -> None:
        self._entries.append(entry)

    def recent(self, limit: int) -> list[MessageEntry]:
        """Return up to `limit` newest entries, oldest first."""
        if limit <= 0:
            return []
        entries = list(self._entries)
        return entries[-limit:]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[MessageEntry]:
        return iter(list(self._entries))


class Room:
    """A named ephemeral channel with one secret and one creator."""

    def __init__(
        self,
        room_id: str,
        secret: str,
        creator_id: str,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
    ) -> None:
        self.room_id = room_id
        self.creator_id = creator_id
        self._secret_hash = hash_room_secret(secret)
        self.members: dict[str, Session] = {}
        self.history = HistoryBuffer(history_capacity)

    def check_secret(self, candidate: str) -> bool:
        """Constant-time comparison of a candidate against the room secret."""
        return secrets.compare_digest(hash_room_secret(candidate), self._secret_hash)

    def add_member(self, session: Session) -> None:
        self.members[session.connection_id] = session

    def remove_member(self, connection_id: str) -> Session | None:
        return self.members.pop(connection_id, None)

    def member_ids(self) -> list[str]:
        return list(self.members)

    @property
    def member_count(self) -> int:
        return len(self.members)

    def is_empty(self) -> bool:
        return not self.members

    def __repr__(self) -> str:
        return f"Room({self.room_id!r}, members={self.member_count}, history={len(self.history)})"


class RoomRegistry:
    """room id -> Room. The only place rooms are created or destroyed."""

    def __init__(self, history_capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        self.history_capacity = history_capacity
        self._rooms: dict[str, Room] = {}
        self._lock = threading.Lock()

    def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: str, secret: str, creator_id: str) -> tuple[Room, bool]:
        """Return the room, creating it with `secret` if it does not exist.

        Exactly one of several concurrent callers for a missing id gets
        `created=True`. The others get the winner's room back and must be
        checked against its secret like any other joiner.
        """
        with self._lock:
            room = self._rooms.get(room_id)
            if room is not None:
                return room, False
            room = Room(room_id, secret, creator_id, self.history_capacity)
            self._rooms[room_id] = room

        logger.info(f"Room {room_id} created by {creator_id}")
        return room, True

    def destroy_if_empty(self, room_id: str) -> bool:
        """Delete the room if it has no members. Safe to call repeatedly."""
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None or not room.is_empty():
                return False
            del self._rooms[room_id]

        logger.info(f"Room {room_id} deleted - no users remaining")
        return True

    def room_ids(self) -> list[str]:
        with self._lock:
            return list(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)


class SessionIndex:
    """connection id -> Session, for O(1) lookup on send, typing and disconnect."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def room_of(self, connection_id: str) -> str | None:
        session = self._sessions.get(connection_id)
        return session.room_id if session else None

    def register(self, session: Session) -> None:
        self._sessions[session.connection_id] = session

    def remove(self, connection_id: str) -> Session | None:
        return self._sessions.pop(connection_id, None)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
