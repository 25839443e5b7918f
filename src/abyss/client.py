"""Client edge of the relay protocol.

RoomClient is transport-agnostic: it builds outbound frames and interprets
inbound ones. All encryption happens here. The relay only ever sees
ciphertext + iv.

Usage:
    client = RoomClient("ABC123", "alice", "hunter2")
    ws.send(json.dumps(client.join_frame()))
    ws.send(json.dumps(client.message_frame("hello")))

    for frame in incoming:
        line = client.handle(frame)
        if line:
            print(line.render())
        if client.needs_secret:
            client.reenter_secret(input("secret: "))

run_chat() wires a RoomClient to a websocket and the terminal.
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable

from .crypto import DECRYPT_MALFORMED, EncryptionContext
from .protocol import (
    ERROR,
    JOIN_ROOM,
    JOIN_SUCCESS,
    LEAVE_ROOM,
    MESSAGE,
    REASON_WRONG_SECRET,
    SEND_MESSAGE,
    START_TYPING,
    STOP_TYPING,
    USER_COUNT,
    USER_TYPING,
    JoinRoomRequest,
    MessageEntry,
)

logger = logging.getLogger(__name__)


@dataclass
class ChatLine:
    """A message ready for display."""

    user: str
    timestamp: str
    text: str | None
    unique_id: str | None = None
    color: str | None = None
    encrypted: bool = False
    undecryptable: bool = False

    def render(self) -> str:
        clock = self.timestamp[11:19] if len(self.timestamp) >= 19 else self.timestamp
        who = f"{self.user}#{self.unique_id}" if self.unique_id else self.user
        if self.undecryptable:
            body = "[unable to decrypt - wrong room secret?]"
        else:
            body = html.unescape(self.text or "")
        lock = "* " if self.encrypted else ""
        return f"[{clock}] {lock}{who}: {body}"


class RoomClient:
    """One participant's view of one room."""

    def __init__(
        self,
        room_id: str,
        username: str,
        secret: str,
        context: EncryptionContext | None = None,
    ) -> None:
        self.room_id = room_id.strip()
        self.username = username
        self._secret = secret
        self.context = context if context is not None else EncryptionContext()
        self.joined = False
        self.is_creator: bool | None = None
        self.member_count = 0
        self.typing: dict[str, str] = {}
        self.last_error: str | None = None
        self.needs_secret = False

    # --- Outbound frames ---

    def join_frame(self) -> dict[str, Any]:
        request = JoinRoomRequest(room=self.room_id, username=self.username, secret=self._secret)
        return {"event": JOIN_ROOM, "data": request.to_wire()}

    def leave_frame(self) -> dict[str, Any]:
        return {"event": LEAVE_ROOM, "data": None}

    def typing_frame(self, typing: bool) -> dict[str, Any]:
        return {"event": START_TYPING if typing else STOP_TYPING, "data": None}

    def message_frame(self, text: str) -> dict[str, Any]:
        """Encrypt `text` for the room.

        Raises:
            MissingRoomKey: If the secret has been invalidated and not re-entered
        """
        self._ensure_key()
        payload = self.context.encrypt(text, self.room_id)
        return {"event": SEND_MESSAGE, "data": payload.to_dict()}

    def reenter_secret(self, secret: str) -> None:
        """Replace the secret and re-derive the room key."""
        self._secret = secret
        self.context.forget(self.room_id)
        self.context.unlock(self.room_id, secret)
        self.needs_secret = False

    def _ensure_key(self) -> None:
        if not self.needs_secret and not self.context.has_key(self.room_id):
            self.context.unlock(self.room_id, self._secret)

    def _invalidate_key(self) -> None:
        self.context.forget(self.room_id)
        self.needs_secret = True

    # --- Inbound frames ---

    def handle(self, frame: dict[str, Any]) -> ChatLine | None:
        """Apply one inbound frame. Returns a ChatLine for `message` events."""
        event = frame.get("event")
        data = frame.get("data") or {}

        if event == MESSAGE:
            return self._on_message(MessageEntry.model_validate(data))

        if event == JOIN_SUCCESS:
            self.joined = True
            # Keys are scoped to the id the relay admitted us under
            self.room_id = data.get("room") or self.room_id
            self.is_creator = bool(data.get("isCreator"))
            self.last_error = None
            self._ensure_key()
        elif event == USER_COUNT:
            self.member_count = int(data.get("count", 0))
        elif event == USER_TYPING:
            unique_id = data.get("uniqueId", "")
            if data.get("isTyping"):
                self.typing[unique_id] = data.get("user", "")
            else:
                self.typing.pop(unique_id, None)
        elif event == ERROR:
            self.last_error = data.get("reason")
            if self.last_error == REASON_WRONG_SECRET:
                self._invalidate_key()
        else:
            logger.debug("Ignoring unknown event %r", event)

        return None

    def _on_message(self, entry: MessageEntry) -> ChatLine:
        line = ChatLine(
            user=entry.user,
            timestamp=entry.timestamp,
            text=entry.text,
            unique_id=entry.unique_id,
            color=entry.color,
            encrypted=entry.is_encrypted,
        )
        if not entry.is_encrypted:
            return line

        self._ensure_key()
        result = self.context.decrypt(entry.encrypted or "", entry.iv or "", self.room_id)
        if result.ok:
            line.text = result.plaintext
            return line

        line.undecryptable = True
        if result.failure != DECRYPT_MALFORMED:
            # Our key opens nothing in this room: the secret we hold is wrong.
            logger.info(f"Decryption failed in room {self.room_id}; secret must be re-entered")
            self._invalidate_key()
        return line


async def run_chat(
    url: str,
    room_id: str,
    username: str,
    secret: str,
    *,
    out: Callable[[str], None] = print,
) -> None:
    """Interactive terminal chat over a websocket.

    Commands: `/secret <secret>` re-enters the secret and rejoins,
    `/leave` leaves the room, `/quit` exits.
    """
    import websockets

    client = RoomClient(room_id, username, secret)

    async with websockets.connect(url) as ws:
        await ws.send(json.dumps(client.join_frame()))

        async def read_frames() -> None:
            async for raw in ws:
                frame = json.loads(raw)
                line = client.handle(frame)
                event = frame.get("event")
                if line is not None:
                    out(line.render())
                elif event == JOIN_SUCCESS:
                    role = "created" if client.is_creator else "joined"
                    out(f"-- {role} room {client.room_id}")
                elif event == USER_COUNT:
                    out(f"-- {client.member_count} online")
                elif event == USER_TYPING and client.typing:
                    out(f"-- {', '.join(client.typing.values())} typing...")
                elif event == ERROR:
                    out(f"!! {client.last_error}")
                if client.needs_secret:
                    out("!! Room secret rejected. Use /secret <secret> to try again.")

        reader = asyncio.create_task(read_frames())
        loop = asyncio.get_running_loop()
        try:
            while True:
                raw_line = await loop.run_in_executor(None, sys.stdin.readline)
                if not raw_line:
                    break
                text = raw_line.rstrip("\n")
                if not text.strip():
                    continue
                if text == "/quit":
                    break
                if text == "/leave":
                    await ws.send(json.dumps(client.leave_frame()))
                    continue
                if text.startswith("/secret "):
                    client.reenter_secret(text[len("/secret ") :])
                    await ws.send(json.dumps(client.join_frame()))
                    continue
                if client.needs_secret:
                    out("!! Use /secret <secret> before sending.")
                    continue
                await ws.send(json.dumps(client.message_frame(text)))
        finally:
            reader.cancel()
