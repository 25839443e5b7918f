"""abyss - Ephemeral, password-gated, end-to-end encrypted chat relay.

Rooms exist only while someone is in them. The first joiner of a room
code sets its secret; everyone else must present the same secret. Clients
derive the room key from that secret and encrypt locally, so the relay
only ever stores and forwards ciphertext.

Usage:
    from abyss import Relay, RecordingTransport

    transport = RecordingTransport()
    relay = Relay(transport)
    relay.connect("c1")
    relay.dispatch("c1", "joinRoom", {"room": "ABC123", "username": "alice", "secret": "hunter2"})

    # Client edge
    from abyss import RoomClient

    client = RoomClient("ABC123", "alice", "hunter2")
    frame = client.message_frame("hello")  # {"event": "sendMessage", "data": {"encrypted": ..., "iv": ...}}
"""

from abyss._version import __version__
from abyss.client import RoomClient
from abyss.crypto import EncryptionContext, derive_room_key
from abyss.engine import Relay
from abyss.errors import AccessDenied, JoinValidationError, MissingRoomKey, RelayError
from abyss.options import RelayConfigError, RelayOptions
from abyss.transport import QueueTransport, RecordingTransport, Transport

__all__ = [
    "__version__",
    "AccessDenied",
    "EncryptionContext",
    "JoinValidationError",
    "MissingRoomKey",
    "QueueTransport",
    "RecordingTransport",
    "Relay",
    "RelayConfigError",
    "RelayError",
    "RelayOptions",
    "RoomClient",
    "Transport",
    "derive_room_key",
]
