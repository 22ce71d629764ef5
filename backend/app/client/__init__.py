"""Python client for the chat relay WebSocket protocol.

Classes:
    - ChatClient: connection, room and message operations plus typed
      event subscriptions.
    - EventEmitter / Subscription: observer plumbing with deterministic
      unsubscribe.
    - TypingNotifier: sender-side typing_start/typing_stop with an
      inactivity auto-stop.
    - TypingIndicator: receiver-side "who is typing" view with expiry.
"""
from .events import EventEmitter, Subscription, TypingUser
from .socket_service import ChatClient
from .typing_state import TypingIndicator, TypingNotifier

__all__ = [
    "ChatClient",
    "EventEmitter",
    "Subscription",
    "TypingIndicator",
    "TypingNotifier",
    "TypingUser",
]
