"""Error taxonomy for the real-time chat core.

All failures are local to one connection or one delivery attempt and never
bring down the server process.
"""
from enum import Enum


class ChatError(Exception):
    """Base class for chat core errors."""


class AuthErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"


class AuthError(ChatError):
    """Missing, invalid or expired credential. Fatal to the connection attempt."""

    def __init__(self, reason: str = "authentication failed") -> None:
        super().__init__(reason)
        self.kind = AuthErrorKind.UNAUTHENTICATED
        self.reason = reason


class RoomErrorKind(str, Enum):
    NOT_JOINED = "not_joined"


class RoomError(ChatError):
    """A room-scoped event arrived for a room the connection never joined."""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"Not joined to room {room_id}")
        self.kind = RoomErrorKind.NOT_JOINED
        self.room_id = room_id


class DeliveryError(ChatError):
    """An outbound frame could not be delivered to one connection.

    Logged and dropped; never propagated to the sender or other recipients.
    """

    def __init__(self, connection_id: str, reason: str) -> None:
        super().__init__(f"Delivery to {connection_id} failed: {reason}")
        self.connection_id = connection_id
        self.reason = reason
