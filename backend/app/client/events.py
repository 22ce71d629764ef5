"""Observer plumbing for client-side event delivery.

Listeners register per event name and get back a :class:`Subscription`
whose ``unsubscribe()`` removes exactly that registration. A listener that
raises is logged and does not stop delivery to the remaining listeners.
"""
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class TypingUser(BaseModel):
    """Payload of a ``user_typing`` event."""
    userId: str = Field(..., description="User who is typing")
    username: str = Field(default="", description="Display name")
    roomId: Optional[str] = Field(default=None, description="Room being typed in")


class Subscription:
    """Handle for one listener registration."""

    def __init__(self, emitter: "EventEmitter", event: str, listener: Listener) -> None:
        self._emitter = emitter
        self.event = event
        self.listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Remove this listener. Safe to call more than once."""
        if self._active:
            self._emitter._remove(self)
            self._active = False

    def _deactivate(self) -> None:
        self._active = False


class EventEmitter:
    """Per-event ordered listener lists.

    Listeners may be plain callables or coroutine functions.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def on(self, event: str, listener: Listener) -> Subscription:
        subscription = Subscription(self, event, listener)
        self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def listener_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, []))

    async def emit(self, event: str, *args: Any) -> int:
        """Call every listener of ``event`` in registration order.

        Returns:
            Number of listeners that completed without raising.
        """
        # Snapshot so listeners may unsubscribe during dispatch
        subscriptions = list(self._subscriptions.get(event, []))
        delivered = 0
        for subscription in subscriptions:
            if not subscription.active:
                continue
            try:
                result = subscription.listener(*args)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("[Client] Listener for %s raised", event)
        return delivered

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        """Drop every listener, or only those of ``event``."""
        events = [event] if event is not None else list(self._subscriptions)
        for name in events:
            for subscription in self._subscriptions.pop(name, []):
                subscription._deactivate()

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.event)
        if not subscriptions:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._subscriptions[subscription.event]
