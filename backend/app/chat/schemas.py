"""Wire schemas for the real-time chat protocol.

Every WebSocket frame is a JSON object whose ``type`` field names the
event; the remaining keys are that event's payload.

These schemas are used by:
    - WebSocket /ws/chat: inbound frame validation
    - RelayEngine: message construction and fan-out
    - MessageStore implementations: history persistence
    - ChatClient: decoding server events
"""
import itertools
import time
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from app.auth.schemas import Identity

ROOM_ID_PREFIX = "room"


class EventType(str, Enum):
    """Event names on the real-time channel.

    Client-originated: JOIN_ROOM, LEAVE_ROOM, SEND_MESSAGE, TYPING_START,
    TYPING_STOP, PING. Everything else is server-originated.
    """
    # Client -> server
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    PING = "ping"

    # Server -> client
    CONNECTED = "connected"
    USERS_ONLINE = "users_online"
    MESSAGE_HISTORY = "message_history"
    RECEIVE_MESSAGE = "receive_message"
    USER_TYPING = "user_typing"
    USER_STOP_TYPING = "user_stop_typing"
    ERROR = "error"
    PONG = "pong"


def room_id_for(user_a: str, user_b: str) -> str:
    """Deterministic room id for a direct conversation.

    The pair is sorted first so ``room_id_for(a, b) == room_id_for(b, a)``.
    """
    first, second = sorted((user_a, user_b))
    return f"{ROOM_ID_PREFIX}_{first}_{second}"


_message_seq = itertools.count(1)


def next_message_id() -> str:
    """Time-derived, process-unique message id: ``<epoch-ms>-<seq>``."""
    return f"{int(time.time() * 1000)}-{next(_message_seq):06d}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class Message(BaseModel):
    """A relayed chat message.

    Immutable once created; appended to its room's history and broadcast
    to every subscriber of the room.

    Attributes:
        id: Unique, time-derived message identifier.
        senderId: Sender's user ID (from the authenticated identity).
        senderUsername: Sender's display name.
        payload: Opaque content; the relay never inspects it.
        roomId: Room this message belongs to.
        timestamp: ISO-8601 UTC creation time.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=next_message_id, description="Unique message ID")
    senderId: str = Field(..., description="User ID of the sender")
    senderUsername: str = Field(default="", description="Display name of the sender")
    payload: str = Field(..., description="Opaque message content")
    roomId: str = Field(..., description="Room ID this message belongs to")
    timestamp: str = Field(default_factory=utc_timestamp, description="ISO-8601 UTC")


# =============================================================================
# Inbound frames
# =============================================================================


class JoinRoomInput(BaseModel):
    """``join_room``: either an explicit roomId or the peer's user ID."""
    roomId: Optional[str] = Field(default=None, min_length=1)
    peerId: Optional[str] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _room_or_peer(self) -> "JoinRoomInput":
        if not self.roomId and not self.peerId:
            raise ValueError("roomId or peerId is required")
        return self

    def resolve(self, user_id: str) -> str:
        if self.roomId:
            return self.roomId
        return room_id_for(user_id, self.peerId)


class RoomInput(BaseModel):
    """``leave_room`` / ``typing_start`` / ``typing_stop``."""
    roomId: str = Field(..., min_length=1)


class SendMessageInput(BaseModel):
    """``send_message``. ``encryptedContent`` is accepted for older clients."""
    roomId: str = Field(..., min_length=1)
    payload: str = Field(
        ...,
        validation_alias=AliasChoices("payload", "encryptedContent"),
    )


# =============================================================================
# Outbound frames
# =============================================================================


def event(event_type: EventType, **payload) -> dict:
    """Build an outbound frame."""
    return {"type": event_type.value, **payload}


def users_online_event(users: List[Identity]) -> dict:
    return event(EventType.USERS_ONLINE, users=[u.model_dump() for u in users])


def message_history_event(room_id: str, messages: List[Message]) -> dict:
    return event(
        EventType.MESSAGE_HISTORY,
        roomId=room_id,
        messages=[m.model_dump() for m in messages],
    )


def receive_message_event(message: Message) -> dict:
    return event(EventType.RECEIVE_MESSAGE, **message.model_dump())


def error_event(error: str) -> dict:
    return event(EventType.ERROR, error=error)
