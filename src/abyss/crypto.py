"""Cryptographic utilities for abyss rooms.

Includes:
- PBKDF2-HMAC-SHA256 derivation of a room key from (secret, room id)
- AES-256-GCM encryption of chat messages with a fresh 12-byte IV per call
- A client-local keyring mapping room ids to derived keys

The relay never calls into this module for messages in flight. It is used
on the client edge only; the server stores and forwards ciphertext + iv.

Key derivation is deterministic: the salt is SHA-256(room_id), so every
holder of the correct secret derives the identical key without any key
exchange. The secret is the confidentiality boundary, not the salt.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import MissingRoomKey

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12
TAG_LENGTH = 16

DECRYPT_AUTH_FAILED = "authentication_failed"
DECRYPT_MISSING_KEY = "missing_key"
DECRYPT_MALFORMED = "malformed"


def bytes_to_base64url(data: bytes) -> str:
    """Encode bytes to base64url (URL-safe, no padding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_to_bytes(s: str) -> bytes:
    """Decode base64url string to bytes (handles missing padding).

    Raises:
        ValueError: If the string is not valid base64url
    """
    # Add padding if needed
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += "=" * padding
    try:
        return base64.b64decode(s, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def room_salt(room_id: str) -> bytes:
    """Deterministic PBKDF2 salt for a room: SHA-256 of the room id."""
    return hashlib.sha256(room_id.encode("utf-8")).digest()


def derive_room_key(secret: str, room_id: str) -> bytes:
    """
    Derive the AES-256-GCM key for a room.

    Args:
        secret: Shared room secret (the password)
        room_id: Room identifier (hashed into the salt)

    Returns:
        32-byte symmetric key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=room_salt(room_id),
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


@dataclass(frozen=True)
class EncryptedPayload:
    """Opaque ciphertext + iv pair as carried on the wire."""

    ciphertext: bytes  # AES-GCM ciphertext with 16-byte tag appended
    iv: bytes  # 12-byte nonce

    def to_dict(self) -> dict:
        """Convert to the `sendMessage{encrypted, iv}` wire shape."""
        return {
            "encrypted": bytes_to_base64url(self.ciphertext),
            "iv": bytes_to_base64url(self.iv),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedPayload":
        """Reconstruct from a wire dict with `encrypted` and `iv` fields."""
        return cls(
            ciphertext=base64url_to_bytes(data["encrypted"]),
            iv=base64url_to_bytes(data["iv"]),
        )


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of a decryption attempt.

    A failed result is a signal, not an error: an authentication failure
    means the locally held key is stale or wrong and the secret has to be
    entered again.
    """

    plaintext: str | None = None
    failure: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, reason: str) -> "DecryptResult":
        return cls(plaintext=None, failure=reason)


def encrypt_room_message(plaintext: str, key: bytes) -> EncryptedPayload:
    """
    Encrypt a chat message with AES-256-GCM.

    A fresh random IV is drawn on every call; IV reuse under a fixed key
    breaks GCM confidentiality.

    Args:
        plaintext: Message text
        key: 32-byte room key from derive_room_key()

    Returns:
        EncryptedPayload with ciphertext and iv
    """
    aesgcm = AESGCM(key)
    iv = os.urandom(IV_LENGTH)
    ciphertext = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedPayload(ciphertext=ciphertext, iv=iv)


def decrypt_room_message(payload: EncryptedPayload, key: bytes) -> DecryptResult:
    """
    Decrypt a chat message.

    Args:
        payload: Ciphertext and iv as received
        key: 32-byte room key

    Returns:
        DecryptResult. Tag failures (wrong key or tampering) and malformed
        payloads come back as failed results instead of raising.
    """
    if len(payload.iv) != IV_LENGTH:
        return DecryptResult.failed(DECRYPT_MALFORMED)

    aesgcm = AESGCM(key)
    try:
        plaintext = aesgcm.decrypt(payload.iv, payload.ciphertext, None)
    except InvalidTag:
        return DecryptResult.failed(DECRYPT_AUTH_FAILED)

    try:
        return DecryptResult(plaintext=plaintext.decode("utf-8"))
    except UnicodeDecodeError:
        return DecryptResult.failed(DECRYPT_MALFORMED)


class RoomKeyring:
    """Client-local cache of derived room keys (room id -> key).

    Keys never leave the keyring. Evicting a key is local cache
    invalidation, not revocation.
    """

    def __init__(self) -> None:
        self._keys: dict[str, bytes] = {}

    def get(self, room_id: str) -> bytes | None:
        return self._keys.get(room_id)

    def put(self, room_id: str, key: bytes) -> None:
        self._keys[room_id] = key

    def evict(self, room_id: str) -> bool:
        """Drop the cached key for a room. Returns True if one was cached."""
        return self._keys.pop(room_id, None) is not None

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class EncryptionContext:
    """Encrypt/decrypt messages for the rooms this client has unlocked."""

    def __init__(self, keyring: RoomKeyring | None = None) -> None:
        self.keyring = keyring if keyring is not None else RoomKeyring()

    def unlock(self, room_id: str, secret: str) -> bytes:
        """Derive and cache the key for a room."""
        key = derive_room_key(secret, room_id)
        self.keyring.put(room_id, key)
        return key

    def has_key(self, room_id: str) -> bool:
        return room_id in self.keyring

    def forget(self, room_id: str) -> bool:
        return self.keyring.evict(room_id)

    def encrypt(self, plaintext: str, room_id: str) -> EncryptedPayload:
        """Encrypt for a room.

        Raises:
            MissingRoomKey: If the room has not been unlocked
        """
        key = self.keyring.get(room_id)
        if key is None:
            raise MissingRoomKey(f"No key derived for room {room_id}")
        return encrypt_room_message(plaintext, key)

    def decrypt(self, ciphertext: str | bytes, iv: str | bytes, room_id: str) -> DecryptResult:
        """Decrypt a message for a room.

        Accepts raw bytes or the base64url strings carried on the wire.
        """
        key = self.keyring.get(room_id)
        if key is None:
            return DecryptResult.failed(DECRYPT_MISSING_KEY)

        try:
            if isinstance(ciphertext, str):
                ciphertext = base64url_to_bytes(ciphertext)
            if isinstance(iv, str):
                iv = base64url_to_bytes(iv)
        except ValueError:
            logger.debug("Undecodable ciphertext for room %s", room_id)
            return DecryptResult.failed(DECRYPT_MALFORMED)

        return decrypt_room_message(EncryptedPayload(ciphertext=ciphertext, iv=iv), key)
