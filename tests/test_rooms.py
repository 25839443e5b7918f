"""Tests for room state: history buffer, rooms, registry and session index."""

import threading

import pytest

from abyss.protocol import MessageEntry
from abyss.rooms import (
    USER_COLORS,
    HistoryBuffer,
    Room,
    RoomRegistry,
    Session,
    SessionIndex,
    generate_room_code,
    generate_short_id,
)


def entry(n: int) -> MessageEntry:
    return MessageEntry(user="alice", text=f"msg {n}", timestamp=f"t{n}")


class TestHistoryBuffer:
    """Tests for the bounded FIFO."""

    def test_default_capacity_is_50(self):
        assert HistoryBuffer().capacity == 50

    def test_never_exceeds_capacity(self):
        buffer = HistoryBuffer()
        for n in range(120):
            buffer.append(entry(n))
            assert len(buffer) <= 50

    def test_51st_append_evicts_oldest(self):
        """After 51 appends the first entry is gone and the rest keep their order."""
        buffer = HistoryBuffer()
        for n in range(51):
            buffer.append(entry(n))

        texts = [e.text for e in buffer]
        assert len(texts) == 50
        assert texts[0] == "msg 1"
        assert texts == [f"msg {n}" for n in range(1, 51)]

    def test_recent_returns_newest_oldest_first(self):
        buffer = HistoryBuffer()
        for n in range(30):
            buffer.append(entry(n))

        recent = buffer.recent(20)
        assert [e.text for e in recent] == [f"msg {n}" for n in range(10, 30)]

    def test_recent_with_fewer_entries(self):
        buffer = HistoryBuffer()
        buffer.append(entry(0))
        assert [e.text for e in buffer.recent(20)] == ["msg 0"]

    def test_recent_zero(self):
        buffer = HistoryBuffer()
        buffer.append(entry(0))
        assert buffer.recent(0) == []

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            HistoryBuffer(0)


class TestRoom:
    """Tests for a single room."""

    def test_secret_check(self):
        room = Room("ABC123", "hunter2", "conn-1")
        assert room.check_secret("hunter2")
        assert not room.check_secret("hunter3")
        assert not room.check_secret("")

    def test_secret_not_stored_in_clear(self):
        room = Room("ABC123", "hunter2", "conn-1")
        assert "hunter2" not in vars(room).values()

    def test_membership(self):
        room = Room("ABC123", "hunter2", "conn-1")
        session = Session(connection_id="conn-1", username="alice", room_id="ABC123")

        assert room.is_empty()
        room.add_member(session)
        assert room.member_count == 1
        assert room.member_ids() == ["conn-1"]

        assert room.remove_member("conn-1") is session
        assert room.remove_member("conn-1") is None
        assert room.is_empty()


class TestRoomRegistry:
    """Tests for room creation and destruction."""

    def test_get_or_create_creates_once(self):
        registry = RoomRegistry()
        room, created = registry.get_or_create("ABC123", "hunter2", "conn-1")
        assert created
        assert room.creator_id == "conn-1"

        again, created_again = registry.get_or_create("ABC123", "other", "conn-2")
        assert again is room
        assert not created_again
        # The winner's secret is never overwritten
        assert room.check_secret("hunter2")
        assert not room.check_secret("other")

    def test_history_capacity_passed_to_rooms(self):
        registry = RoomRegistry(history_capacity=5)
        room, _ = registry.get_or_create("ABC123", "s", "c")
        assert room.history.capacity == 5

    def test_destroy_if_empty(self):
        registry = RoomRegistry()
        registry.get_or_create("ABC123", "hunter2", "conn-1")

        assert registry.destroy_if_empty("ABC123")
        assert "ABC123" not in registry
        assert registry.get("ABC123") is None

    def test_destroy_if_empty_is_idempotent(self):
        registry = RoomRegistry()
        registry.get_or_create("ABC123", "hunter2", "conn-1")
        assert registry.destroy_if_empty("ABC123")
        assert not registry.destroy_if_empty("ABC123")
        assert not registry.destroy_if_empty("NEVER")

    def test_destroy_if_empty_keeps_occupied_room(self):
        registry = RoomRegistry()
        room, _ = registry.get_or_create("ABC123", "hunter2", "conn-1")
        room.add_member(Session(connection_id="conn-1", username="alice", room_id="ABC123"))

        assert not registry.destroy_if_empty("ABC123")
        assert "ABC123" in registry

    def test_recreated_room_has_new_secret(self):
        registry = RoomRegistry()
        registry.get_or_create("ABC123", "hunter2", "conn-1")
        registry.destroy_if_empty("ABC123")

        room, created = registry.get_or_create("ABC123", "fresh", "conn-2")
        assert created
        assert room.creator_id == "conn-2"
        assert room.check_secret("fresh")
        assert not room.check_secret("hunter2")

    def test_concurrent_creation_has_single_winner(self):
        """Many threads racing to create the same room: exactly one creates it."""
        registry = RoomRegistry()
        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def worker(n: int):
            barrier.wait()
            room, created = registry.get_or_create("RACE01", f"secret-{n}", f"conn-{n}")
            with lock:
                results.append((n, room, created))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [(n, room) for n, room, created in results if created]
        assert len(winners) == 1
        winner_n, winner_room = winners[0]
        assert all(room is winner_room for _, room, _ in results)
        assert winner_room.creator_id == f"conn-{winner_n}"
        assert winner_room.check_secret(f"secret-{winner_n}")
        assert len(registry) == 1


class TestSessionIndex:
    """Tests for connection -> session lookup."""

    def test_register_and_lookup(self):
        index = SessionIndex()
        session = Session(connection_id="conn-1", username="alice", room_id="ABC123")
        index.register(session)

        assert index.get("conn-1") is session
        assert index.room_of("conn-1") == "ABC123"
        assert "conn-1" in index
        assert len(index) == 1

    def test_remove(self):
        index = SessionIndex()
        index.register(Session(connection_id="conn-1", username="alice", room_id="ABC123"))
        assert index.remove("conn-1") is not None
        assert index.remove("conn-1") is None
        assert index.room_of("conn-1") is None


class TestIdentifiers:
    """Tests for generated ids, codes and colors."""

    def test_short_id_format(self):
        for _ in range(20):
            short_id = generate_short_id()
            assert len(short_id) == 4
            assert short_id.isalnum()
            assert short_id == short_id.lower()

    def test_room_code_format(self):
        code = generate_room_code()
        assert len(code) == 6
        assert code.isalnum()
        assert code == code.upper()

    def test_session_defaults(self):
        session = Session(connection_id="c", username="alice", room_id="ABC123")
        assert session.color in USER_COLORS
        assert len(session.unique_id) == 4
        assert session.is_typing is False
