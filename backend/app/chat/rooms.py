"""Room store: ordered message history per room.

Thin layer over a :class:`~app.storage.MessageStore` that adds the per-room
lock the relay uses to serialize appends, fan-out and history snapshots.
"""
import asyncio
import logging
from typing import Dict, List

from app.storage import MessageStore

from .schemas import Message

logger = logging.getLogger(__name__)


class RoomStore:
    """Owns the lifecycle of every room's history.

    Args:
        store: Persistence backend.
        max_history: If > 0, ``get_history`` returns only the most recent N
            messages. The underlying log is never truncated.
    """

    def __init__(self, store: MessageStore, max_history: int = 0) -> None:
        self._store = store
        self._max_history = max_history
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> MessageStore:
        return self._store

    def lock(self, room_id: str) -> asyncio.Lock:
        """Mutex serializing mutation and snapshot of one room."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    def ensure_room(self, room_id: str) -> None:
        self._store.ensure_room(room_id)

    def append_message(self, room_id: str, message: Message) -> None:
        if message.roomId != room_id:
            raise ValueError(
                f"Message {message.id} belongs to {message.roomId}, not {room_id}"
            )
        self._store.append(room_id, message)
        logger.debug(f"[Rooms] Appended {message.id} to {room_id}")

    def get_history(self, room_id: str) -> List[Message]:
        limit = self._max_history if self._max_history > 0 else None
        return self._store.history(room_id, limit=limit)
