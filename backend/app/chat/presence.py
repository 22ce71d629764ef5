"""Presence registry: who is online right now.

Maps ``userId`` to the connection currently canonical for routing. Every
mutation pushes a full ``users_online`` refresh to all registered
connections (not a diff).

Reconnect semantics:
    - ``register`` is last-write-wins; a superseded connection is not closed,
      it simply stops being canonical.
    - ``unregister`` is tied to the specific connection handle, so a late
      disconnect from a superseded connection never evicts the fresh one.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.auth.schemas import Identity

from .connection import Connection
from .schemas import users_online_event

logger = logging.getLogger(__name__)


@dataclass
class PresenceEntry:
    """One currently-connected user."""
    identity: Identity
    connection: Connection


class PresenceRegistry:
    """Source of truth for the online set.

    All methods are synchronous so each mutation and its broadcast happen
    atomically with respect to the event loop.
    """

    def __init__(self) -> None:
        # userId -> PresenceEntry (insertion ordered)
        self._entries: Dict[str, PresenceEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def get(self, user_id: str) -> Optional[PresenceEntry]:
        return self._entries.get(user_id)

    def register(self, identity: Identity, connection: Connection) -> None:
        """Upsert ``identity`` -> ``connection`` and broadcast the online set."""
        previous = self._entries.get(identity.userId)
        self._entries[identity.userId] = PresenceEntry(identity=identity, connection=connection)
        if previous is not None and previous.connection is not connection:
            logger.info(
                f"[Presence] {identity.userId} reconnected; "
                f"connection {connection.id} supersedes {previous.connection.id}"
            )
        else:
            logger.info(f"[Presence] {identity.userId} online ({len(self._entries)} total)")
        self.broadcast_online()

    def unregister(self, user_id: str, connection: Optional[Connection] = None) -> bool:
        """Remove ``user_id`` if present (and, when given, still bound to ``connection``).

        Returns:
            True if the registry changed (and a broadcast was sent).
        """
        entry = self._entries.get(user_id)
        if entry is None:
            return False
        if connection is not None and entry.connection is not connection:
            logger.debug(
                f"[Presence] Ignoring stale unregister of {user_id} "
                f"from superseded connection {connection.id}"
            )
            return False
        del self._entries[user_id]
        logger.info(f"[Presence] {user_id} offline ({len(self._entries)} total)")
        self.broadcast_online()
        return True

    def list_online(self, excluding: Optional[str] = None) -> List[Identity]:
        """Snapshot of online identities, optionally without ``excluding``."""
        return [
            entry.identity
            for user_id, entry in self._entries.items()
            if user_id != excluding
        ]

    def connections(self) -> List[Connection]:
        return [entry.connection for entry in self._entries.values()]

    def broadcast_online(self) -> int:
        """Send the full online set to every registered connection.

        Returns:
            Number of connections the frame was queued for.
        """
        frame = users_online_event(self.list_online())
        delivered = 0
        for connection in self.connections():
            if connection.send(frame):
                delivered += 1
        return delivered
