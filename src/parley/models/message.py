# src/parley/models/message.py
"""Models describing encrypted direct messages and their receipts."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from parley.db.session import Base
from parley.db.time import utcnow

MESSAGE_STATUS_SENDING = "sending"
MESSAGE_STATUS_SENT = "sent"
MESSAGE_STATUS_DELIVERED = "delivered"
MESSAGE_STATUS_READ = "read"
MESSAGE_STATUS_FAILED = "failed"

# Unread from the recipient's point of view.
UNREAD_STATUSES = (MESSAGE_STATUS_SENT, MESSAGE_STATUS_DELIVERED)

MESSAGE_TYPES = ("text", "image", "video", "audio", "file", "location", "system")
ATTACHMENT_TYPES = ("image", "video", "audio", "file")

DEFAULT_ALGORITHM = "aes-256-gcm"

RECEIPT_DELIVERED = "delivered"
RECEIPT_READ = "read"


class Message(Base):
    """Encrypted message exchanged inside a conversation.

    Only ciphertext, IV and auth tag are stored; the server never sees
    plaintext. Rows are never hard-deleted.
    """

    __tablename__ = "message"
    __table_args__ = (
        Index("ix_message_conversation_sent_at", "conversation_id", "sent_at"),
        Index("ix_message_recipient_status", "recipient_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversation.id"), nullable=False, index=True
    )
    sender_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id"), nullable=False, index=True
    )
    recipient_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("user_account.id"), nullable=True
    )

    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    iv: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    # GCM tag; optional on the wire for algorithms that append it to the ciphertext.
    auth_tag: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    algorithm: Mapped[str] = mapped_column(String(32), nullable=False, default=DEFAULT_ALGORITHM)

    type: Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    # Each attachment is encrypted separately and carries its own IV.
    attachments: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    reply_to_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("message.id"), nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MESSAGE_STATUS_SENDING, index=True
    )

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    receipts: Mapped[list[MessageReceipt]] = relationship(
        "MessageReceipt",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageReceipt.id",
    )
    deletions: Mapped[list[MessageDeletion]] = relationship(
        "MessageDeletion",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def _receipts(self, kind: str) -> list[MessageReceipt]:
        return [receipt for receipt in self.receipts if receipt.kind == kind]

    @property
    def delivered_to(self) -> list[MessageReceipt]:
        return self._receipts(RECEIPT_DELIVERED)

    @property
    def read_by(self) -> list[MessageReceipt]:
        return self._receipts(RECEIPT_READ)

    @property
    def deleted_for(self) -> set[int]:
        return {deletion.user_id for deletion in self.deletions}

    def has_receipt(self, kind: str, user_id: int) -> bool:
        return any(receipt.user_id == user_id for receipt in self._receipts(kind))


class MessageReceipt(Base):
    """Delivery or read confirmation recorded once per (message, user, kind)."""

    __tablename__ = "message_receipt"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "kind", name="uq_message_receipt"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("message.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("user_account.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # 'delivered' or 'read'
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    message: Mapped[Message] = relationship("Message", back_populates="receipts")


class MessageDeletion(Base):
    """Per-user "delete for me" marker."""

    __tablename__ = "message_deletion"

    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("message.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id"), primary_key=True
    )
    deleted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    message: Mapped[Message] = relationship("Message", back_populates="deletions")
