"""Join-time access control.

The first joiner of an unknown room id creates the room and sets its
secret. Everyone after that has to present the same secret.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import AccessDenied, JoinValidationError
from .protocol import REASON_SECRET_REQUIRED, REASON_WRONG_SECRET, JoinRoomRequest
from .rooms import Room, RoomRegistry

logger = logging.getLogger(__name__)

MIN_ROOM_ID_LENGTH = 3
MAX_ROOM_ID_LENGTH = 32
MIN_USERNAME_LENGTH = 2
MAX_USERNAME_LENGTH = 20


@dataclass(frozen=True)
class JoinAccepted:
    room: Room
    username: str
    is_creator: bool


def normalize_join(request: JoinRoomRequest) -> tuple[str, str]:
    """Validate and normalize (room id, username).

    Raises:
        JoinValidationError: If either value is malformed
    """
    room_id = request.room.strip()
    if not MIN_ROOM_ID_LENGTH <= len(room_id) <= MAX_ROOM_ID_LENGTH:
        raise JoinValidationError(
            f"Room code must be {MIN_ROOM_ID_LENGTH}-{MAX_ROOM_ID_LENGTH} characters"
        )

    username = request.username.strip()
    if not username:
        raise JoinValidationError("Username is required")
    if not MIN_USERNAME_LENGTH <= len(username) <= MAX_USERNAME_LENGTH:
        raise JoinValidationError(
            f"Username must be {MIN_USERNAME_LENGTH}-{MAX_USERNAME_LENGTH} characters"
        )
    if "<" in username or ">" in username:
        raise JoinValidationError("Username contains invalid characters")

    return room_id, username


class AccessGate:
    """Validates join attempts against the room registry."""

    def __init__(self, registry: RoomRegistry) -> None:
        self.registry = registry

    def admit(self, connection_id: str, request: JoinRoomRequest) -> JoinAccepted:
        """Decide a join attempt.

        Creates the room when it does not exist yet. Does not register the
        session; the caller does that once the previous room has been left.

        Raises:
            JoinValidationError: Malformed parameters, or blank secret on create
            AccessDenied: Secret does not match an existing room
        """
        room_id, username = normalize_join(request)
        secret = request.secret

        if self.registry.get(room_id) is None and not secret.strip():
            raise JoinValidationError(REASON_SECRET_REQUIRED)

        if secret.strip():
            room, created = self.registry.get_or_create(room_id, secret, connection_id)
            if created:
                return JoinAccepted(room=room, username=username, is_creator=True)
        else:
            room = self.registry.get(room_id)
            if room is None:
                # Destroyed between the two lookups; blank secret cannot create.
                raise JoinValidationError(REASON_SECRET_REQUIRED)

        # Existing room, including one another caller created a moment ago.
        if not room.check_secret(secret):
            logger.info(f"Rejected join to room {room_id} by {connection_id}: wrong secret")
            raise AccessDenied(REASON_WRONG_SECRET)

        return JoinAccepted(room=room, username=username, is_creator=False)
