"""Per-connection handle with an ordered, non-blocking outbound queue.

Every admitted WebSocket gets one :class:`Connection`. Frames destined for
it (broadcasts and point-to-point replies alike) are enqueued with
:meth:`Connection.send`, which never awaits the socket. A single writer task
drains the queue, so:

    - delivery order per connection equals enqueue order
    - a slow or dead subscriber never stalls the sender or other subscribers

A full queue or a failed socket write marks the connection dead; it then
accepts no further frames and its transport is closed so the receive loop
unwinds through the normal disconnect path.
"""
import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Optional, Set

from app.auth.schemas import Identity
from app.errors import DeliveryError

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

# WebSocket close code for an internal error on our side
WS_INTERNAL_ERROR = 1011


class ConnectionState(str, Enum):
    """Lifecycle of a single connection.

    Attributes:
        CONNECTING: Transport open, credential not yet verified.
        AUTHENTICATED: Identity known; presence registered.
        DISCONNECTED: Terminal. Removed from presence and all rooms.
    """
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class Connection:
    """Handle for one authenticated real-time connection.

    Attributes:
        id: Server-generated connection ID (distinct from the user ID).
        websocket: Underlying transport; anything with async ``send_json``
            and ``close``.
        identity: Verified identity bound at authentication time.
        state: Current lifecycle state.
        rooms: Room IDs this connection has joined.
        typing_rooms: Rooms in which this connection last sent typing_start
            without a matching typing_stop.
    """

    def __init__(
        self,
        websocket: Any,
        identity: Identity,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.state = ConnectionState.CONNECTING
        self.rooms: Set[str] = set()
        self.typing_rooms: Set[str] = set()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None
        self._alive = True

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.identity.userId} state={self.state.value}>"

    @property
    def user_id(self) -> str:
        return self.identity.userId

    @property
    def alive(self) -> bool:
        return self._alive

    def start(self) -> None:
        """Start the writer task. Must be called from the event loop."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, frame: dict) -> bool:
        """Enqueue a frame for delivery without waiting on the socket.

        Returns:
            True if queued, False if the connection is dead or saturated.
        """
        if not self._alive:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._mark_dead("outbound queue full")
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued frame has been written (or dropped)."""
        if self._writer is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Stop the writer task. Pending frames are discarded."""
        self._alive = False
        self._discard_pending()
        writer, self._writer = self._writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                if self._alive:
                    await self.websocket.send_json(frame)
            except Exception as e:
                self._mark_dead(str(e) or type(e).__name__)
            finally:
                self._queue.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    def _mark_dead(self, reason: str) -> None:
        if not self._alive:
            return
        self._alive = False
        error = DeliveryError(self.id, reason)
        logger.warning(f"[WS] {error} (userId={self.user_id}); dropping connection")
        self._discard_pending()
        self._closer = asyncio.get_running_loop().create_task(self._close_transport())

    async def _close_transport(self) -> None:
        try:
            await self.websocket.close(code=WS_INTERNAL_ERROR)
        except Exception as e:
            logger.debug(f"[WS] Close after delivery failure raised: {e}")
