# src/parley/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .message import (
    Attachment,
    DeleteMessageRequest,
    EncryptedContent,
    KeyExchangeRequest,
    MessageCreate,
    PublicKeyResponse,
)

__all__ = [
    "Attachment",
    "DeleteMessageRequest",
    "EncryptedContent",
    "KeyExchangeRequest",
    "MessageCreate",
    "PublicKeyResponse",
]
