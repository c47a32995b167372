# src/parley/schemas/message.py
"""Message-related Pydantic schemas and serializers.

Request bodies use the camelCase field names of the wire protocol and accept
snake_case as well.
"""

from __future__ import annotations

import base64
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from parley.db.time import isoformat
from parley.models import Conversation, Message

_WIRE_CONFIG = ConfigDict(populate_by_name=True)


class EncryptedContent(BaseModel):
    """AES-GCM output produced on the client, every field base64 encoded.

    Fields are optional here so that a missing ciphertext or IV surfaces as a
    400 from the endpoint instead of a schema error.
    """

    model_config = _WIRE_CONFIG

    encrypted: str | None = Field(None, description="Base64 ciphertext")
    iv: str | None = Field(None, description="Base64 12-byte initialization vector")
    auth_tag: str | None = Field(None, alias="authTag", description="Base64 GCM tag")
    algorithm: str = Field("aes-256-gcm")


class Attachment(BaseModel):
    """Separately encrypted attachment reference."""

    model_config = _WIRE_CONFIG

    type: Literal["image", "video", "audio", "file"]
    encrypted_url: str | None = Field(None, alias="encryptedUrl")
    iv: str = Field(..., min_length=1)
    file_name: str | None = Field(None, alias="fileName")
    file_size: int | None = Field(None, alias="fileSize", ge=0)
    mime_type: str | None = Field(None, alias="mimeType")
    thumbnail_url: str | None = Field(None, alias="thumbnailUrl")


class MessageCreate(BaseModel):
    """Schema for sending a message."""

    model_config = _WIRE_CONFIG

    conversation_id: int | None = Field(None, alias="conversationId")
    recipient_id: int | None = Field(None, alias="recipientId")
    content: EncryptedContent | None = None
    type: str = Field("text", description="Message type")
    attachments: list[Attachment] | None = None
    reply_to: int | None = Field(None, alias="replyTo")
    expires_in: int | None = Field(
        None, alias="expiresIn", gt=0, description="Lifetime in milliseconds"
    )


class DeleteMessageRequest(BaseModel):
    model_config = _WIRE_CONFIG

    for_everyone: bool = Field(False, alias="forEveryone")


class KeyExchangeRequest(BaseModel):
    """Publish the caller's ECDH public key to a peer."""

    model_config = _WIRE_CONFIG

    recipient_id: int = Field(..., alias="recipientId")
    public_key: str = Field(..., alias="publicKey", min_length=1)


class PublicKeyResponse(BaseModel):
    model_config = _WIRE_CONFIG

    user_id: int = Field(..., alias="userId")
    public_key: str = Field(..., alias="publicKey")


def _b64(value: bytes | None) -> str | None:
    if value is None:
        return None
    return base64.b64encode(value).decode()


def serialize_message(message: Message) -> dict[str, Any]:
    """Serialize a Message into its wire form (ciphertext only)."""
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "senderId": message.sender_id,
        "recipientId": message.recipient_id,
        "content": {
            "encrypted": _b64(message.ciphertext),
            "iv": _b64(message.iv),
            "authTag": _b64(message.auth_tag),
            "algorithm": message.algorithm,
        },
        "type": message.type,
        "attachments": message.attachments or [],
        "replyTo": message.reply_to_id,
        "status": message.status,
        "deliveredTo": [
            {"userId": receipt.user_id, "deliveredAt": isoformat(receipt.at)}
            for receipt in message.delivered_to
        ],
        "readBy": [
            {"userId": receipt.user_id, "readAt": isoformat(receipt.at)}
            for receipt in message.read_by
        ],
        "deleted": message.deleted,
        "deletedAt": isoformat(message.deleted_at),
        "expiresAt": isoformat(message.expires_at),
        "sentAt": isoformat(message.sent_at),
    }


def serialize_conversation(
    conversation: Conversation,
    participants: list[dict[str, Any]],
    last_message: Message | None,
    unread_count: int,
) -> dict[str, Any]:
    """Serialize a conversation summary for the conversation list."""
    return {
        "id": conversation.id,
        "participants": participants,
        "lastMessage": (
            {
                "id": last_message.id,
                "senderId": last_message.sender_id,
                "type": last_message.type,
                "sentAt": isoformat(last_message.sent_at),
            }
            if last_message is not None and not last_message.deleted
            else None
        ),
        "lastMessageAt": isoformat(conversation.last_message_at),
        "unreadCount": unread_count,
        "createdAt": isoformat(conversation.created_at),
    }
