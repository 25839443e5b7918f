"""Wire protocol for the relay.

Every websocket frame is a JSON object `{"event": <name>, "data": <payload>}`.
Payload field names are camelCase on the wire and snake_case in Python.

Inbound events (client -> relay):
    joinRoom{room, username, secret}
    leaveRoom
    sendMessage{text} | sendMessage{encrypted, iv} | sendMessage "<legacy text>"
    startTyping, stopTyping

Outbound events (relay -> client):
    message{user, uniqueId, color, timestamp, text | encrypted + iv, isEncrypted}
    userCount{count}
    userTyping{user, uniqueId, isTyping}
    error{reason}
    joinSuccess{room, isCreator}
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

# Inbound
JOIN_ROOM = "joinRoom"
LEAVE_ROOM = "leaveRoom"
SEND_MESSAGE = "sendMessage"
START_TYPING = "startTyping"
STOP_TYPING = "stopTyping"

# Outbound
MESSAGE = "message"
USER_COUNT = "userCount"
USER_TYPING = "userTyping"
ERROR = "error"
JOIN_SUCCESS = "joinSuccess"

SYSTEM_USER = "System"

# Client-facing error reasons
REASON_WRONG_SECRET = "Incorrect room password"
REASON_SECRET_REQUIRED = "Password required to create room"
REASON_JOIN_FAILED = "Failed to join room"
REASON_LEAVE_FAILED = "Failed to leave room"
REASON_SEND_FAILED = "Failed to send message"
REASON_TYPING_FAILED = "Failed to update typing state"
REASON_BAD_FRAME = "Malformed event"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    """Base for all payloads: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Frame(BaseModel):
    event: str
    data: Any = None


# --- Inbound payloads ---


class JoinRoomRequest(WireModel):
    room: str
    username: str
    secret: str = ""


class SendMessageRequest(WireModel):
    text: str | None = None
    encrypted: str | None = None
    iv: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "SendMessageRequest":
        if self.text is not None:
            if self.encrypted is not None or self.iv is not None:
                raise ValueError("sendMessage carries either text or encrypted+iv, not both")
        elif self.encrypted is None or self.iv is None:
            raise ValueError("sendMessage requires text, or both encrypted and iv")
        return self

    @property
    def is_encrypted(self) -> bool:
        return self.encrypted is not None

    @classmethod
    def parse(cls, data: Any) -> "SendMessageRequest":
        """Accept the object shapes plus a legacy bare string."""
        if isinstance(data, str):
            return cls(text=data)
        return cls.model_validate(data)


# --- Outbound payloads ---


class MessageEntry(WireModel):
    """A chat or system message, as stored in history and broadcast."""

    user: str
    timestamp: str
    unique_id: str | None = None
    color: str | None = None
    text: str | None = None
    encrypted: str | None = None
    iv: str | None = None
    is_encrypted: bool = False

    @classmethod
    def system(cls, text: str) -> "MessageEntry":
        return cls(user=SYSTEM_USER, text=text, timestamp=utc_timestamp())


class UserCount(WireModel):
    count: int


class UserTyping(WireModel):
    user: str
    unique_id: str
    is_typing: bool


class ErrorEvent(WireModel):
    reason: str


class JoinSuccess(WireModel):
    room: str
    is_creator: bool
