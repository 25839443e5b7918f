"""The relay: routes connection events and fans out presence, messages and typing.

Every handler runs under one relay lock and never suspends; outbound
events are handed to the Transport, which queues them. That makes each
handler atomic with respect to every other connection, so membership,
history and the session index always agree with what was broadcast.

Event flow for a join:
    0. malformed parameters, or a blank secret for a room that does not
       exist, are rejected before anything changes
    1. the connection leaves whatever room it was in (count rebroadcast,
       room destroyed if it became empty)
    2. AccessGate decides: create, admit, or reject
    3. joiner gets joinSuccess, then the replayed history
    4. existing members get the join announcement
    5. everyone in the room gets the new userCount
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from pydantic import ValidationError

from .crypto import IV_LENGTH, TAG_LENGTH, base64url_to_bytes
from .errors import RelayError
from .gate import AccessGate, JoinAccepted, normalize_join
from .history import HistoryReplay
from .metrics import metrics, timed_handler
from .options import RelayOptions
from .protocol import (
    ERROR,
    JOIN_ROOM,
    JOIN_SUCCESS,
    LEAVE_ROOM,
    MESSAGE,
    REASON_JOIN_FAILED,
    REASON_LEAVE_FAILED,
    REASON_SECRET_REQUIRED,
    REASON_SEND_FAILED,
    REASON_TYPING_FAILED,
    SEND_MESSAGE,
    START_TYPING,
    STOP_TYPING,
    USER_COUNT,
    USER_TYPING,
    ErrorEvent,
    JoinRoomRequest,
    JoinSuccess,
    MessageEntry,
    SendMessageRequest,
    UserCount,
    UserTyping,
    utc_timestamp,
)
from .rooms import Room, RoomRegistry, Session, SessionIndex
from .sanitize import sanitize_message
from .transport import Transport

logger = logging.getLogger(__name__)


class Relay:
    """In-memory chat relay for one process."""

    def __init__(self, transport: Transport, options: RelayOptions | None = None) -> None:
        self.options = options or RelayOptions()
        self.transport = transport
        self.registry = RoomRegistry(history_capacity=self.options.history_capacity)
        self.sessions = SessionIndex()
        self.gate = AccessGate(self.registry)
        self.replay = HistoryReplay(transport, limit=self.options.replay_limit)
        self._connections: set[str] = set()
        self._lock = threading.RLock()
        self._handlers: dict[str, tuple[Callable[[str, Any], Any], str]] = {
            JOIN_ROOM: (self.join_room, REASON_JOIN_FAILED),
            LEAVE_ROOM: (self.leave_room, REASON_LEAVE_FAILED),
            SEND_MESSAGE: (self.send_message, REASON_SEND_FAILED),
            START_TYPING: (self.start_typing, REASON_TYPING_FAILED),
            STOP_TYPING: (self.stop_typing, REASON_TYPING_FAILED),
        }

    # --- Connection lifecycle ---

    def connect(self, connection_id: str) -> None:
        with self._lock:
            self._connections.add(connection_id)
        logger.info(f"User connected: {connection_id}")

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    @timed_handler("disconnect")
    def disconnect(self, connection_id: str) -> None:
        """Tear down a connection. Later events for it are ignored."""
        with self._lock:
            self._connections.discard(connection_id)
            self._leave_current_room(connection_id)
        logger.info(f"User disconnected: {connection_id}")

    def dispatch(self, connection_id: str, event: str, data: Any = None) -> Any:
        """Route one inbound event.

        Failures inside a handler are logged and reported to this
        connection only; they never propagate to the caller.
        """
        if connection_id not in self._connections:
            logger.debug("Ignoring %s from disconnected %s", event, connection_id)
            return None

        route = self._handlers.get(event)
        if route is None:
            logger.debug("Ignoring unknown event %r from %s", event, connection_id)
            return None

        handler, failure_reason = route
        try:
            return handler(connection_id, data)
        except Exception:
            logger.error(f"Error handling {event} for {connection_id}", exc_info=True)
            metrics.increment("handler_errors")
            self._send_error(connection_id, failure_reason)
            return None

    # --- Join / leave ---

    @timed_handler(JOIN_ROOM)
    def join_room(self, connection_id: str, data: Any) -> JoinAccepted | None:
        """Handle joinRoom{room, username, secret}.

        Returns the JoinAccepted decision, or None if the join was rejected
        (the reason has already been sent to the connection).
        """
        with self._lock:
            if connection_id not in self._connections:
                return None

            try:
                request = JoinRoomRequest.model_validate(data)
                room_id, _ = normalize_join(request)
            except ValidationError:
                self._reject_join(connection_id, REASON_JOIN_FAILED)
                return None
            except RelayError as e:
                self._reject_join(connection_id, e.reason)
                return None

            # Blank secret can never create a room; reject before leaving
            if not request.secret.strip() and room_id not in self.registry:
                self._reject_join(connection_id, REASON_SECRET_REQUIRED)
                return None

            self._leave_current_room(connection_id)

            try:
                accepted = self.gate.admit(connection_id, request)
            except RelayError as e:
                self._reject_join(connection_id, e.reason)
                return None

            if accepted.is_creator:
                metrics.increment("rooms_created")

            try:
                self._admit(connection_id, accepted)
            except Exception:
                # Undo a partial admission so the room can't linger empty.
                accepted.room.remove_member(connection_id)
                self.sessions.remove(connection_id)
                self.registry.destroy_if_empty(accepted.room.room_id)
                raise

            return accepted

    def _reject_join(self, connection_id: str, reason: str) -> None:
        metrics.increment("joins_rejected")
        self._send_error(connection_id, reason)

    def _admit(self, connection_id: str, accepted: JoinAccepted) -> Session:
        room = accepted.room
        session = Session(
            connection_id=connection_id,
            username=accepted.username,
            room_id=room.room_id,
        )
        room.add_member(session)
        self.sessions.register(session)

        self.transport.send(
            connection_id,
            JOIN_SUCCESS,
            JoinSuccess(room=room.room_id, is_creator=accepted.is_creator).to_wire(),
        )

        # History first, so the joiner never sees its own announcement
        self.replay.replay(room, connection_id)

        announcement = MessageEntry.system(sanitize_message(f"{session.username} joined the room"))
        room.history.append(announcement)
        self._broadcast(room, MESSAGE, announcement.to_wire(), exclude=connection_id)
        self._broadcast_count(room)

        metrics.increment("joins_accepted")
        logger.info(
            f"{session.username} (ID: {session.unique_id}) joined room {room.room_id} "
            f"with color {session.color}"
        )
        return session

    @timed_handler(LEAVE_ROOM)
    def leave_room(self, connection_id: str, data: Any = None) -> str | None:
        """Handle an explicit leave. Returns the room left, if any."""
        with self._lock:
            return self._leave_current_room(connection_id)

    def _leave_current_room(self, connection_id: str) -> str | None:
        session = self.sessions.remove(connection_id)
        if session is None:
            return None

        room = self.registry.get(session.room_id)
        if room is None:
            logger.warning(f"Session {connection_id} pointed at missing room {session.room_id}")
            return session.room_id

        room.remove_member(connection_id)

        if session.is_typing:
            session.is_typing = False
            self._broadcast(room, USER_TYPING, self._typing_event(session))

        departure = MessageEntry.system(sanitize_message(f"{session.username} left the room"))
        room.history.append(departure)
        self._broadcast(room, MESSAGE, departure.to_wire())
        self._broadcast_count(room)

        if self.registry.destroy_if_empty(room.room_id):
            metrics.increment("rooms_destroyed")

        logger.info(f"{session.username} (ID: {session.unique_id}) left room {room.room_id}")
        return room.room_id

    # --- Messages ---

    @timed_handler(SEND_MESSAGE)
    def send_message(self, connection_id: str, data: Any) -> MessageEntry | None:
        """Handle sendMessage. Returns the stored entry, or None if dropped."""
        with self._lock:
            session = self.sessions.get(connection_id)
            room = self.registry.get(session.room_id) if session else None
            if session is None or room is None:
                # Stale client racing a leave/disconnect: drop quietly.
                logger.debug("Dropping message from %s: not in a room", connection_id)
                return None

            try:
                request = SendMessageRequest.parse(data)
            except ValidationError:
                self._send_error(connection_id, REASON_SEND_FAILED)
                return None

            if request.is_encrypted:
                if not self._valid_ciphertext(request):
                    self._send_error(connection_id, REASON_SEND_FAILED)
                    return None
                entry = MessageEntry(
                    user=session.username,
                    unique_id=session.unique_id,
                    color=session.color,
                    timestamp=utc_timestamp(),
                    encrypted=request.encrypted,
                    iv=request.iv,
                    is_encrypted=True,
                )
            else:
                text = sanitize_message(request.text or "", self.options.max_message_length)
                if not text:
                    return None
                entry = MessageEntry(
                    user=session.username,
                    unique_id=session.unique_id,
                    color=session.color,
                    timestamp=utc_timestamp(),
                    text=text,
                )

            room.history.append(entry)
            # Sender included: clients render the relay-stamped copy.
            self._broadcast(room, MESSAGE, entry.to_wire())
            metrics.increment("messages_relayed")
            return entry

    def _valid_ciphertext(self, request: SendMessageRequest) -> bool:
        if request.encrypted is None or request.iv is None:
            return False
        if not request.encrypted or len(request.encrypted) > self.options.max_ciphertext_length:
            return False
        try:
            ciphertext = base64url_to_bytes(request.encrypted)
            iv = base64url_to_bytes(request.iv)
        except ValueError:
            return False
        # Anything shorter cannot even hold the GCM tag
        return len(iv) == IV_LENGTH and len(ciphertext) >= TAG_LENGTH

    # --- Typing ---

    @timed_handler(START_TYPING)
    def start_typing(self, connection_id: str, data: Any = None) -> bool:
        return self._set_typing(connection_id, True)

    @timed_handler(STOP_TYPING)
    def stop_typing(self, connection_id: str, data: Any = None) -> bool:
        return self._set_typing(connection_id, False)

    def _set_typing(self, connection_id: str, typing: bool) -> bool:
        """Apply a typing transition. Returns True if anything was broadcast."""
        with self._lock:
            session = self.sessions.get(connection_id)
            if session is None or session.is_typing == typing:
                return False
            room = self.registry.get(session.room_id)
            if room is None:
                return False

            session.is_typing = typing
            self._broadcast(room, USER_TYPING, self._typing_event(session), exclude=connection_id)
            return True

    @staticmethod
    def _typing_event(session: Session) -> dict[str, Any]:
        return UserTyping(
            user=session.username,
            unique_id=session.unique_id,
            is_typing=session.is_typing,
        ).to_wire()

    # --- Helpers ---

    def _broadcast(self, room: Room, event: str, data: Any, exclude: str | None = None) -> None:
        recipients = [cid for cid in room.member_ids() if cid != exclude]
        self.transport.broadcast(recipients, event, data)

    def _broadcast_count(self, room: Room) -> None:
        self._broadcast(room, USER_COUNT, UserCount(count=room.member_count).to_wire())

    def _send_error(self, connection_id: str, reason: str) -> None:
        self.transport.send(connection_id, ERROR, ErrorEvent(reason=reason).to_wire())

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "rooms": len(self.registry),
                "sessions": len(self.sessions),
                "connections": len(self._connections),
            }
