"""WebSocket client for the chat relay.

Usage:
    client = ChatClient("ws://localhost:3001/ws/chat")
    client.on_message(lambda msg: print(msg.senderUsername, msg.payload))
    await client.connect(token)
    await client.join_room(room_id_for(me, peer))
    await client.send_message(room_id, ciphertext)
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from app.auth.schemas import Identity
from app.chat.schemas import EventType, Message

from .events import EventEmitter, Listener, Subscription, TypingUser
from .typing_state import TypingNotifier

logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://localhost:3001/ws/chat"

# Must stay below the server's session.idle_timeout_seconds (300 by default)
DEFAULT_HEARTBEAT_INTERVAL = 30.0

Connector = Callable[[str], Awaitable[Any]]


class ChatClient:
    """Client-side socket service with typed event subscriptions.

    Args:
        url: WebSocket endpoint of the relay.
        connector: Coroutine function opening a connection for a URI.
            Defaults to :func:`websockets.connect`.
        heartbeat_interval: Seconds between keepalive pings so a client that
            only reads is not closed as idle. 0 disables.
    """

    def __init__(
        self,
        url: str = DEFAULT_URL,
        connector: Optional[Connector] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self.url = url
        self._connector = connector or websockets.connect
        self.heartbeat_interval = heartbeat_interval
        self._heartbeat: Optional[asyncio.Task] = None
        self._events = EventEmitter()
        self._ws: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self.identity: Optional[Identity] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self, token: str) -> None:
        """Open the connection with ``token`` as credential. No-op if connected."""
        if self.connected:
            return
        separator = "&" if "?" in self.url else "?"
        uri = f"{self.url}{separator}{urlencode({'token': token})}"
        self._ws = await self._connector(uri)
        self._reader = asyncio.create_task(self._read_loop())
        if self.heartbeat_interval > 0:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())
        logger.info("[Client] Connected to %s", self.url)

    async def disconnect(self) -> None:
        self._stop_heartbeat()
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self.identity = None

    async def wait_closed(self) -> None:
        """Block until the server side ends the connection."""
        if self._reader is not None:
            await asyncio.shield(self._reader)

    # =========================================================================
    # Commands
    # =========================================================================

    async def join_room(self, room_id: str) -> None:
        await self._send(EventType.JOIN_ROOM, roomId=room_id)

    async def join_peer(self, peer_id: str) -> None:
        """Join the direct-message room shared with ``peer_id``."""
        await self._send(EventType.JOIN_ROOM, peerId=peer_id)

    async def leave_room(self, room_id: str) -> None:
        await self._send(EventType.LEAVE_ROOM, roomId=room_id)

    async def send_message(self, room_id: str, payload: str) -> None:
        await self._send(EventType.SEND_MESSAGE, roomId=room_id, payload=payload)

    async def start_typing(self, room_id: str) -> None:
        await self._send(EventType.TYPING_START, roomId=room_id)

    async def stop_typing(self, room_id: str) -> None:
        await self._send(EventType.TYPING_STOP, roomId=room_id)

    async def ping(self) -> None:
        await self._send(EventType.PING)

    def typing_notifier(self, room_id: str, inactivity_timeout: float = 1.0) -> TypingNotifier:
        """Sender-side typing helper bound to ``room_id``."""
        return TypingNotifier(
            lambda: self.start_typing(room_id),
            lambda: self.stop_typing(room_id),
            inactivity_timeout=inactivity_timeout,
        )

    async def _send(self, event_type: EventType, **payload: Any) -> None:
        if self._ws is None:
            logger.debug("[Client] Dropping %s: not connected", event_type.value)
            return
        await self._ws.send(json.dumps({"type": event_type.value, **payload}))

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def on_connected(self, listener: Callable[[Identity], Any]) -> Subscription:
        return self._events.on(EventType.CONNECTED.value, listener)

    def on_message(self, listener: Callable[[Message], Any]) -> Subscription:
        return self._events.on(EventType.RECEIVE_MESSAGE.value, listener)

    def on_online_users(self, listener: Callable[[List[Identity]], Any]) -> Subscription:
        return self._events.on(EventType.USERS_ONLINE.value, listener)

    def on_typing(self, listener: Callable[[TypingUser], Any]) -> Subscription:
        return self._events.on(EventType.USER_TYPING.value, listener)

    def on_stop_typing(self, listener: Callable[[str, Optional[str]], Any]) -> Subscription:
        """``listener(user_id, room_id)``."""
        return self._events.on(EventType.USER_STOP_TYPING.value, listener)

    def on_message_history(
        self, listener: Callable[[str, List[Message]], Any]
    ) -> Subscription:
        """``listener(room_id, messages)``."""
        return self._events.on(EventType.MESSAGE_HISTORY.value, listener)

    def on_error(self, listener: Callable[[str], Any]) -> Subscription:
        return self._events.on(EventType.ERROR.value, listener)

    def on_disconnect(self, listener: Listener) -> Subscription:
        return self._events.on("disconnect", listener)

    def remove_all_listeners(self) -> None:
        self._events.remove_all_listeners()

    # =========================================================================
    # Inbound
    # =========================================================================

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("[Client] Ignoring non-JSON frame")
                    continue
                if not isinstance(frame, dict):
                    logger.warning("[Client] Ignoring non-object frame")
                    continue
                try:
                    await self.dispatch(frame)
                except (ValidationError, KeyError, TypeError) as e:
                    logger.warning(
                        "[Client] Ignoring malformed %s frame: %s", frame.get("type"), e
                    )
        except ConnectionClosed as e:
            logger.info("[Client] Connection closed: %s", e)
        finally:
            if self._ws is ws:
                # Loop ended without disconnect(): release the socket ourselves
                self._ws = None
                self.identity = None
                self._stop_heartbeat()
                await self._close_quietly(ws)
            await self._events.emit("disconnect")

    async def _heartbeat_loop(self) -> None:
        while self._ws is not None:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.ping()
            except ConnectionClosed:
                return

    def _stop_heartbeat(self) -> None:
        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("[Client] Close after read loop exit raised: %s", e)

    async def dispatch(self, frame: dict) -> None:
        """Decode one server frame and notify the matching listeners."""
        event_type = frame.get("type")

        if event_type == EventType.CONNECTED.value:
            self.identity = Identity.model_validate(frame["user"])
            await self._events.emit(event_type, self.identity)
        elif event_type == EventType.RECEIVE_MESSAGE.value:
            message = Message.model_validate(
                {k: v for k, v in frame.items() if k != "type"}
            )
            await self._events.emit(event_type, message)
        elif event_type == EventType.USERS_ONLINE.value:
            users = [Identity.model_validate(u) for u in frame.get("users", [])]
            await self._events.emit(event_type, users)
        elif event_type == EventType.USER_TYPING.value:
            await self._events.emit(event_type, TypingUser.model_validate(frame))
        elif event_type == EventType.USER_STOP_TYPING.value:
            await self._events.emit(event_type, frame.get("userId", ""), frame.get("roomId"))
        elif event_type == EventType.MESSAGE_HISTORY.value:
            messages = [Message.model_validate(m) for m in frame.get("messages", [])]
            await self._events.emit(event_type, frame.get("roomId", ""), messages)
        elif event_type == EventType.PONG.value:
            logger.debug("[Client] Heartbeat acknowledged")
        elif event_type == EventType.ERROR.value:
            logger.warning("[Client] Server error: %s", frame.get("error"))
            await self._events.emit(event_type, frame.get("error", ""))
        else:
            logger.debug("[Client] Unhandled event type: %s", event_type)
