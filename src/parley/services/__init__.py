# src/parley/services/__init__.py
"""Business logic services for the Parley messaging service."""

from .crypto import CryptoService
from .message_store import MessageStore, MessageValidationError, SqlAlchemyMessageStore

__all__ = [
    "CryptoService",
    "MessageStore",
    "MessageValidationError",
    "SqlAlchemyMessageStore",
]
