"""In-memory MessageStore (history lives for the lifetime of the process)."""
from typing import Dict, List, Optional

from app.chat.schemas import Message

from .base import MessageStore


class InMemoryMessageStore(MessageStore):

    def __init__(self) -> None:
        # room_id -> list of messages (append-only history)
        self._history: Dict[str, List[Message]] = {}

    def ensure_room(self, room_id: str) -> None:
        self._history.setdefault(room_id, [])

    def has_room(self, room_id: str) -> bool:
        return room_id in self._history

    def append(self, room_id: str, message: Message) -> None:
        self._history.setdefault(room_id, []).append(message)

    def history(self, room_id: str, limit: Optional[int] = None) -> List[Message]:
        messages = self._history.get(room_id, [])
        if limit is not None and limit > 0:
            return list(messages[-limit:])
        return list(messages)
