"""MessageStore abstract interface.

The relay owns *when* messages are appended; a store only decides *where*
they live. Implementations must keep per-room insertion order and must
never mutate or delete an appended message.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from app.chat.schemas import Message


class MessageStore(ABC):
    """Append-only, room-keyed message history."""

    @abstractmethod
    def ensure_room(self, room_id: str) -> None:
        """Create an empty history for ``room_id`` if none exists. Idempotent."""
        pass

    @abstractmethod
    def has_room(self, room_id: str) -> bool:
        pass

    @abstractmethod
    def append(self, room_id: str, message: Message) -> None:
        """Append ``message`` to the tail of ``room_id``'s history.

        All-or-nothing: on failure nothing is stored.
        """
        pass

    @abstractmethod
    def history(self, room_id: str, limit: Optional[int] = None) -> List[Message]:
        """Return the room's messages oldest first.

        Args:
            room_id: Room to read.
            limit: If set, only the most recent ``limit`` messages.

        Returns:
            Empty list for a room that was never referenced.
        """
        pass

    def close(self) -> None:
        """Release any underlying resources."""
        pass
