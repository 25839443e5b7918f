"""Pytest fixtures for testing against an in-process relay.

Usage in conftest.py:
    from abyss.testing import connect, relay, relay_options, transport  # noqa: F401

Available fixtures:
    - relay_options: RelayOptions with defaults, independent of the environment
    - transport: RecordingTransport capturing every outbound frame
    - relay: Relay wired to `transport`
    - connect: factory that opens a connection and returns its id
"""

from __future__ import annotations

from typing import Any, Callable, Generator

import pytest

from .engine import Relay
from .gate import JoinAccepted
from .metrics import metrics
from .options import RelayOptions
from .protocol import JOIN_ROOM
from .transport import RecordingTransport


@pytest.fixture
def relay_options(monkeypatch: pytest.MonkeyPatch) -> RelayOptions:
    """Default options with ABYSS_* variables cleared."""
    for var in ("ABYSS_HOST", "ABYSS_PORT", "ABYSS_ALLOWED_ORIGINS", "ABYSS_LOG_LEVEL", "ABYSS_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    return RelayOptions()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def relay(transport: RecordingTransport, relay_options: RelayOptions) -> Generator[Relay, None, None]:
    """Fresh relay with no rooms. Global metrics are reset around each test.

    Example:
        def test_something(relay, transport, connect):
            alice = connect()
            relay.join_room(alice, {"room": "ABC123", "username": "alice", "secret": "s"})
            assert transport.last(alice, "joinSuccess")["isCreator"]
    """
    metrics.reset()
    yield Relay(transport, relay_options)
    metrics.reset()


@pytest.fixture
def connect(relay: Relay) -> Callable[[str | None], str]:
    """Open a connection on `relay`; returns its connection id."""
    counter = {"n": 0}

    def _connect(connection_id: str | None = None) -> str:
        counter["n"] += 1
        cid = connection_id or f"conn-{counter['n']}"
        relay.connect(cid)
        return cid

    return _connect


def join(relay: Relay, connection_id: str, room: str, username: str, secret: str) -> JoinAccepted | None:
    """Dispatch a joinRoom event the way the websocket endpoint does."""
    data: dict[str, Any] = {"room": room, "username": username, "secret": secret}
    return relay.dispatch(connection_id, JOIN_ROOM, data)
