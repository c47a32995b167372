"""Client library for Parley messaging sessions."""

from .api import MessagingApiClient, MessagingApiError
from .keyring import KeyRing
from .session import (
    ConnectionState,
    ConversationView,
    LocalMessage,
    MessagingSession,
    SessionConfig,
    SessionError,
)
from .transport import Transport, TransportError, WebSocketTransport

__all__ = [
    "ConnectionState",
    "ConversationView",
    "KeyRing",
    "LocalMessage",
    "MessagingApiClient",
    "MessagingApiError",
    "MessagingSession",
    "SessionConfig",
    "SessionError",
    "Transport",
    "TransportError",
    "WebSocketTransport",
]
