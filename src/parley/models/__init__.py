# src/parley/models/__init__.py
"""SQLAlchemy models for the Parley messaging service."""

from .conversation import Conversation
from .message import Message, MessageDeletion, MessageReceipt
from .user import User

__all__ = [
    "Conversation",
    "Message", "MessageDeletion", "MessageReceipt",
    "User",
]
