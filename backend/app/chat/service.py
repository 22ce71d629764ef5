"""ChatService: composition root for the real-time core.

Created once at process start (see ``app/main.py``) and injected into the
WebSocket and HTTP handlers via ``app.state.chat``.
"""
import logging
from typing import Optional

from fastapi import Request, WebSocket

from app.auth.service import IdentityProvider, JWTIdentityProvider, SessionAuthenticator
from app.config import AppConfig
from app.storage import MessageStore, create_store

from .lifecycle import ConnectionLifecycleManager
from .presence import PresenceRegistry
from .relay import RelayEngine
from .rooms import RoomStore

logger = logging.getLogger(__name__)


class ChatService:
    """Owns presence, rooms, relay and lifecycle for one process.

    Args:
        identity_provider: Verifies connection credentials.
        store: Message persistence backend.
        require_join: Reject send/typing for rooms not joined.
        queue_size: Per-connection outbound queue bound.
        max_history: Cap on history returned to joiners (0 = all).
        idle_timeout: Seconds without inbound frames before the server
            closes a connection (0 disables).
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        store: MessageStore,
        *,
        require_join: bool = False,
        queue_size: int = 256,
        max_history: int = 0,
        idle_timeout: float = 0.0,
    ) -> None:
        self.identity_provider = identity_provider
        self.authenticator = SessionAuthenticator(identity_provider)
        self.presence = PresenceRegistry()
        self.rooms = RoomStore(store, max_history=max_history)
        self.relay = RelayEngine(self.rooms, require_join=require_join)
        self.lifecycle = ConnectionLifecycleManager(
            self.authenticator, self.presence, self.relay, queue_size=queue_size
        )
        self.idle_timeout = idle_timeout

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        identity_provider: Optional[IdentityProvider] = None,
    ) -> "ChatService":
        if identity_provider is None:
            identity_provider = JWTIdentityProvider(
                secret_key=config.secrets.jwt.secret_key,
                algorithm=config.auth.algorithm,
                expire_minutes=config.auth.token_expire_minutes,
            )
        store = create_store(config.storage.backend, config.storage.path)
        logger.info(
            "Chat service ready: storage=%s require_join=%s idle_timeout=%ss",
            config.storage.backend,
            config.session.require_join,
            config.session.idle_timeout_seconds,
        )
        return cls(
            identity_provider,
            store,
            require_join=config.session.require_join,
            queue_size=config.session.outbound_queue_size,
            max_history=config.storage.max_history_per_room,
            idle_timeout=config.session.idle_timeout_seconds,
        )

    def close(self) -> None:
        self.rooms.store.close()


def get_chat_service(request: Request) -> ChatService:
    """FastAPI dependency for HTTP routes."""
    return request.app.state.chat


def get_ws_chat_service(websocket: WebSocket) -> ChatService:
    """FastAPI dependency for WebSocket routes."""
    return websocket.app.state.chat
