"""Relay engine: room subscriptions, message fan-out and typing signals.

Per connection x room the state machine is ``NotJoined -> Joined``.

Key behaviour:
    - join_room delivers the room's full history to the joiner only, and
      subscribes it, atomically with respect to sends on that room
    - send_message appends to history, then broadcasts to every subscriber
      including the sender (clients render the echo, not an optimistic copy)
    - typing_start / typing_stop go to every subscriber except the sender
    - fan-out only enqueues; dead subscribers are dropped from the room

Room membership:
    Any connection that knows a room ID may join it. With
    ``require_join=False`` (default) a connection may also send or signal
    typing to a room it has not joined; with ``require_join=True`` such
    events raise :class:`RoomError`.

Thread Safety:
    Designed for a single event loop. Per-room ordering comes from
    ``RoomStore.lock``.
"""
import logging
from typing import Dict, List, Optional

from app.errors import AuthError, RoomError

from .connection import Connection, ConnectionState
from .rooms import RoomStore
from .schemas import (
    EventType,
    Message,
    event,
    message_history_event,
    receive_message_event,
)

logger = logging.getLogger(__name__)


class RelayEngine:
    """Routes room events between connections and the room store."""

    def __init__(self, rooms: RoomStore, require_join: bool = False) -> None:
        self._rooms = rooms
        self._require_join = require_join
        # room_id -> {connection_id -> Connection} (insertion ordered)
        self._subscribers: Dict[str, Dict[str, Connection]] = {}

    @property
    def rooms(self) -> RoomStore:
        return self._rooms

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def join_room(self, connection: Connection, room_id: str) -> List[Message]:
        """Subscribe ``connection`` to ``room_id`` and send it the history.

        Joining an already-joined room re-sends the history and is otherwise
        a no-op. Joining does not leave any other room.

        Returns:
            The history snapshot that was delivered.
        """
        self._require_authenticated(connection)
        async with self._rooms.lock(room_id):
            self._rooms.ensure_room(room_id)
            history = self._rooms.get_history(room_id)
            self._subscribers.setdefault(room_id, {})[connection.id] = connection
            connection.rooms.add(room_id)
            connection.send(message_history_event(room_id, history))

        logger.info(
            f"[Relay] {connection.user_id} joined {room_id} "
            f"({len(history)} messages, {self.get_room_size(room_id)} subscribers)"
        )
        return history

    def leave_room(self, connection: Connection, room_id: str) -> bool:
        """Unsubscribe ``connection`` from ``room_id``.

        A pending typing indicator for the room is cleared for the others.

        Returns:
            True if the connection was subscribed.
        """
        if room_id in connection.typing_rooms:
            self._emit_stop_typing(connection, room_id)
        subscribers = self._subscribers.get(room_id)
        removed = subscribers is not None and subscribers.pop(connection.id, None) is not None
        if subscribers is not None and not subscribers:
            del self._subscribers[room_id]
        connection.rooms.discard(room_id)
        if removed:
            logger.info(f"[Relay] {connection.user_id} left {room_id}")
        return removed

    def remove_connection(self, connection: Connection) -> None:
        """Drop ``connection`` from every room it joined (disconnect path)."""
        for room_id in list(connection.typing_rooms):
            self._emit_stop_typing(connection, room_id)
        for room_id in list(connection.rooms):
            self.leave_room(connection, room_id)

    def is_joined(self, connection: Connection, room_id: str) -> bool:
        return connection.id in self._subscribers.get(room_id, {})

    def get_subscribers(self, room_id: str) -> List[Connection]:
        return list(self._subscribers.get(room_id, {}).values())

    def get_room_size(self, room_id: str) -> int:
        """Get the number of subscribed connections in a room."""
        return len(self._subscribers.get(room_id, {}))

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self, connection: Connection, room_id: str, payload: str
    ) -> Message:
        """Create a message, append it to history, broadcast it to the room.

        Raises:
            AuthError: Connection is not authenticated.
            RoomError: ``require_join`` is on and the room was not joined.
        """
        self._require_authenticated(connection)
        self._check_joined(connection, room_id)

        async with self._rooms.lock(room_id):
            message = Message(
                senderId=connection.identity.userId,
                senderUsername=connection.identity.username,
                payload=payload,
                roomId=room_id,
            )
            self._rooms.append_message(room_id, message)
            delivered = self.broadcast(receive_message_event(message), room_id)

        logger.info(
            f"[Relay] Message {message.id} from {connection.user_id} "
            f"in {room_id} -> {delivered} subscribers"
        )
        return message

    # =========================================================================
    # Typing
    # =========================================================================

    def start_typing(self, connection: Connection, room_id: str) -> int:
        """Tell the room's other subscribers that ``connection`` is typing."""
        self._require_authenticated(connection)
        self._check_joined(connection, room_id)
        connection.typing_rooms.add(room_id)
        return self.broadcast_except(
            event(
                EventType.USER_TYPING,
                userId=connection.identity.userId,
                username=connection.identity.username,
                roomId=room_id,
            ),
            room_id,
            exclude=connection,
        )

    def stop_typing(self, connection: Connection, room_id: str) -> int:
        """Tell the room's other subscribers that ``connection`` stopped typing."""
        self._require_authenticated(connection)
        self._check_joined(connection, room_id)
        return self._emit_stop_typing(connection, room_id)

    def _emit_stop_typing(self, connection: Connection, room_id: str) -> int:
        connection.typing_rooms.discard(room_id)
        return self.broadcast_except(
            event(
                EventType.USER_STOP_TYPING,
                userId=connection.identity.userId,
                roomId=room_id,
            ),
            room_id,
            exclude=connection,
        )

    # =========================================================================
    # Fan-out
    # =========================================================================

    def broadcast(self, frame: dict, room_id: str) -> int:
        """Queue ``frame`` for every subscriber of ``room_id``.

        Returns:
            Number of subscribers the frame was queued for.
        """
        return self.broadcast_except(frame, room_id, exclude=None)

    def broadcast_except(
        self, frame: dict, room_id: str, exclude: Optional[Connection]
    ) -> int:
        """Queue ``frame`` for every subscriber of ``room_id`` except ``exclude``.

        Subscribers whose queue rejects the frame are removed from the room.
        """
        connections = [
            conn for conn in self.get_subscribers(room_id)
            if conn is not exclude
        ]
        failed = [conn for conn in connections if not conn.send(frame)]
        self._cleanup_connections(room_id, failed)
        return len(connections) - len(failed)

    def _cleanup_connections(self, room_id: str, failed: List[Connection]) -> None:
        subscribers = self._subscribers.get(room_id)
        if not failed or subscribers is None:
            return
        for conn in failed:
            if subscribers.pop(conn.id, None) is not None:
                conn.rooms.discard(room_id)
                logger.debug(f"[Relay] Removed dead connection {conn.id} from {room_id}")
        if not subscribers:
            del self._subscribers[room_id]

    # =========================================================================
    # Guards
    # =========================================================================

    @staticmethod
    def _require_authenticated(connection: Connection) -> None:
        if connection.state is not ConnectionState.AUTHENTICATED:
            raise AuthError(f"Connection is {connection.state.value}")

    def _check_joined(self, connection: Connection, room_id: str) -> None:
        if self._require_join and not self.is_joined(connection, room_id):
            raise RoomError(room_id)
