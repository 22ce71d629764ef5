"""Connection lifecycle: Connecting -> Authenticated -> (Joined)* -> Disconnected.

Keeps the presence registry and relay subscriptions consistent across
connect and disconnect transitions.
"""
import logging
from typing import Any, Optional

from app.auth.schemas import Identity
from app.auth.service import SessionAuthenticator
from app.errors import AuthError

from .connection import DEFAULT_QUEUE_SIZE, Connection, ConnectionState
from .presence import PresenceRegistry
from .relay import RelayEngine
from .schemas import EventType, event

logger = logging.getLogger(__name__)

# 1008 = Policy Violation
WS_POLICY_VIOLATION = 1008


class ConnectionLifecycleManager:
    """Admits authenticated connections and tears them down exactly once."""

    def __init__(
        self,
        authenticator: SessionAuthenticator,
        presence: PresenceRegistry,
        relay: RelayEngine,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._authenticator = authenticator
        self._presence = presence
        self._relay = relay
        self._queue_size = queue_size

    async def open(self, websocket: Any, credential: Optional[str]) -> Connection:
        """Authenticate, accept and admit a new WebSocket.

        On failure the socket is closed with 1008 before it is accepted and
        nothing else observes the attempt.

        Raises:
            AuthError: The credential was missing, invalid or expired.
        """
        try:
            identity = await self._authenticator.authenticate(credential)
        except AuthError:
            await websocket.close(code=WS_POLICY_VIOLATION)
            raise

        await websocket.accept()
        return self.admit(websocket, identity)

    def admit(self, websocket: Any, identity: Identity) -> Connection:
        """Create the connection handle, register presence and announce it."""
        connection = Connection(websocket, identity, queue_size=self._queue_size)
        connection.start()
        connection.state = ConnectionState.AUTHENTICATED
        connection.send(event(EventType.CONNECTED, user=identity.model_dump()))
        self._presence.register(identity, connection)
        logger.info(f"[WS] {identity.userId} connected as {connection.id}")
        return connection

    async def disconnect(self, connection: Connection) -> bool:
        """Unsubscribe from every room, drop presence, stop the writer.

        Idempotent: a second call for the same connection does nothing.

        Returns:
            True if this call performed the transition.
        """
        if connection.state is ConnectionState.DISCONNECTED:
            return False
        connection.state = ConnectionState.DISCONNECTED

        self._relay.remove_connection(connection)
        self._presence.unregister(connection.user_id, connection)
        logger.info(f"[WS] {connection.user_id} disconnected ({connection.id})")
        await connection.close()
        return True
