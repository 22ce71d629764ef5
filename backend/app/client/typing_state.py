"""Client-side typing state.

The relay does not debounce or expire typing signals; clients do:

    - TypingNotifier (sender): emits typing_start once per burst of
      keystrokes and typing_stop after an inactivity window.
    - TypingIndicator (receiver): remembers who is typing per room and
      forgets anyone not refreshed within ``expiry`` seconds, so a lost
      stop event never leaves a stuck indicator.
"""
import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Tuple

from .events import Subscription, TypingUser

if TYPE_CHECKING:
    from app.auth.schemas import Identity

    from .socket_service import ChatClient

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_TIMEOUT = 1.0
DEFAULT_EXPIRY = 3.0


class TypingNotifier:
    """Debounces outgoing typing signals for one room.

    Args:
        send_start: Coroutine function emitting typing_start.
        send_stop: Coroutine function emitting typing_stop.
        inactivity_timeout: Seconds after the last keystroke before
            typing_stop is sent automatically.
    """

    def __init__(
        self,
        send_start: Callable[[], Awaitable[None]],
        send_stop: Callable[[], Awaitable[None]],
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
    ) -> None:
        self._send_start = send_start
        self._send_stop = send_stop
        self.inactivity_timeout = inactivity_timeout
        self._typing = False
        self._timer: Optional[asyncio.Task] = None

    @property
    def typing(self) -> bool:
        return self._typing

    async def keystroke(self) -> None:
        """Record input activity; starts typing if idle and re-arms the timer."""
        if not self._typing:
            self._typing = True
            await self._send_start()
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire())

    async def stop(self) -> None:
        """Stop typing now (e.g. the message was sent)."""
        self._cancel_timer()
        if self._typing:
            self._typing = False
            await self._send_stop()

    async def _expire(self) -> None:
        await asyncio.sleep(self.inactivity_timeout)
        self._timer = None
        if self._typing:
            self._typing = False
            await self._send_stop()

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()


class TypingIndicator:
    """Receiver-side view of who is typing, with expiry.

    Args:
        expiry: Seconds a typing entry survives without a refresh.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        expiry: float = DEFAULT_EXPIRY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.expiry = expiry
        self._clock = clock
        # (room_id, user_id) -> (TypingUser, deadline)
        self._entries: Dict[Tuple[Optional[str], str], Tuple[TypingUser, float]] = {}
        self._subscriptions: List[Subscription] = []

    def mark_typing(self, user: TypingUser) -> None:
        self._entries[(user.roomId, user.userId)] = (user, self._clock() + self.expiry)

    def clear(self, user_id: str, room_id: Optional[str] = None) -> None:
        """Forget ``user_id`` in ``room_id`` (or in every room when None)."""
        for key in list(self._entries):
            if key[1] == user_id and (room_id is None or key[0] == room_id):
                del self._entries[key]

    def retain_online(self, users: List["Identity"]) -> None:
        """Drop entries for users no longer in the online set."""
        online = {u.userId for u in users}
        for key in list(self._entries):
            if key[1] not in online:
                del self._entries[key]

    def typing_users(self, room_id: Optional[str] = None) -> List[TypingUser]:
        """Users currently typing (in ``room_id`` if given), expired ones pruned."""
        now = self._clock()
        for key, (_, deadline) in list(self._entries.items()):
            if deadline <= now:
                logger.debug("[Client] Typing indicator for %s expired", key[1])
                del self._entries[key]
        return [
            user for (room, _), (user, _) in self._entries.items()
            if room_id is None or room == room_id
        ]

    def attach(self, client: "ChatClient") -> None:
        """Follow ``client``'s typing, stop-typing and presence events."""
        self.detach()
        self._subscriptions = [
            client.on_typing(self.mark_typing),
            client.on_stop_typing(self.clear),
            client.on_online_users(self.retain_online),
        ]

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
