"""Exception types raised by the relay and its client edge."""


class RelayError(Exception):
    """Base class for relay errors that carry a client-facing reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class JoinValidationError(RelayError):
    """Join parameters are malformed, or a room would be created without a secret."""

    pass


class AccessDenied(RelayError):
    """The supplied secret does not match the room's secret."""

    pass


class MissingRoomKey(RelayError):
    """No key has been derived for the room on this client."""

    pass
