# src/parley/services/message_store.py
"""Durable storage for conversations, encrypted messages and receipts."""

from __future__ import annotations

import abc
import base64
import binascii
import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, desc, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parley.db.session import SessionLocal
from parley.db.time import utcnow
from parley.models import Conversation, Message, MessageDeletion, MessageReceipt, User
from parley.models.message import (
    ATTACHMENT_TYPES,
    DEFAULT_ALGORITHM,
    MESSAGE_STATUS_DELIVERED,
    MESSAGE_STATUS_READ,
    MESSAGE_STATUS_SENT,
    MESSAGE_TYPES,
    RECEIPT_DELIVERED,
    RECEIPT_READ,
    UNREAD_STATUSES,
)

logger = logging.getLogger(__name__)

__all__ = [
    "MessageStore",
    "MessageValidationError",
    "SqlAlchemyMessageStore",
    "store_scope",
]


class MessageValidationError(ValueError):
    """Raised when a message or conversation request is malformed."""


class MessageStore(abc.ABC):
    """Storage interface used by the REST handlers, the hub and the delivery queue."""

    @abc.abstractmethod
    def get_user(self, user_id: int) -> User | None:
        """Return a user by id."""

    @abc.abstractmethod
    def set_public_key(self, user_id: int, public_key: str) -> User | None:
        """Store the user's current ECDH public key."""

    @abc.abstractmethod
    def get_public_key(self, user_id: int) -> str | None:
        """Return the user's current public key, if any."""

    @abc.abstractmethod
    def find_or_create_conversation(self, user_a: int, user_b: int) -> Conversation:
        """Return the single conversation between two users, creating it on first use."""

    @abc.abstractmethod
    def get_conversation(self, conversation_id: int) -> Conversation | None:
        """Return a conversation by id."""

    @abc.abstractmethod
    def is_participant(self, conversation: Conversation, user_id: int) -> bool:
        """Return True when `user_id` belongs to `conversation`."""

    @abc.abstractmethod
    def list_conversations(
        self, user_id: int, limit: int, skip: int = 0
    ) -> list[Conversation]:
        """Return the user's conversations, most recently active first."""

    @abc.abstractmethod
    def create_message(
        self,
        conversation: Conversation,
        sender_id: int,
        recipient_id: int | None,
        content: Mapping[str, Any],
        message_type: str = "text",
        attachments: Sequence[Mapping[str, Any]] | None = None,
        reply_to_id: int | None = None,
        expires_in_ms: int | None = None,
    ) -> Message:
        """Persist an encrypted message and advance the conversation pointer.

        Raises:
            MessageValidationError: If ciphertext or IV is missing, a field is
                not valid base64 or the message type is unknown.
        """

    @abc.abstractmethod
    def get_message(self, message_id: int) -> Message | None:
        """Return a message by id."""

    @abc.abstractmethod
    def get_conversation_messages(
        self,
        conversation_id: int,
        limit: int,
        before: datetime | None = None,
        after: datetime | None = None,
        requester: int | None = None,
    ) -> list[Message]:
        """Return visible messages newest first.

        `before` and `after` are exclusive bounds on the send time and may be
        combined. Globally deleted, requester-deleted and expired messages are
        never returned.
        """

    @abc.abstractmethod
    def mark_delivered(self, message: Message, user_id: int) -> bool:
        """Record delivery to `user_id`; returns False when already recorded."""

    @abc.abstractmethod
    def mark_read(self, message: Message, user_id: int) -> bool:
        """Record a read by `user_id`; returns False when already recorded."""

    @abc.abstractmethod
    def mark_all_read(self, user_id: int, conversation_id: int) -> int:
        """Mark every unread message addressed to the user in a conversation as read."""

    @abc.abstractmethod
    def mark_many_delivered(self, messages: Sequence[Message], user_id: int) -> list[Message]:
        """Promote still-sent messages to delivered and return the promoted ones."""

    @abc.abstractmethod
    def soft_delete(self, message: Message, for_user_id: int | None = None) -> None:
        """Hide a message for one user, or for everyone when `for_user_id` is None."""

    @abc.abstractmethod
    def get_unread_count(self, user_id: int, conversation_id: int | None = None) -> int:
        """Count messages addressed to the user that are not yet read."""

    @abc.abstractmethod
    def get_pending_messages(self, user_id: int, limit: int) -> list[Message]:
        """Return undelivered messages addressed to the user, oldest first."""


def _decode_field(content: Mapping[str, Any], key: str, required: bool) -> bytes | None:
    value = content.get(key)
    if not value:
        if required:
            raise MessageValidationError("Message must be encrypted")
        return None
    if not isinstance(value, str):
        raise MessageValidationError(f"Encrypted field '{key}' must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MessageValidationError(f"Encrypted field '{key}' must be valid base64") from exc


def _validate_attachments(
    attachments: Sequence[Mapping[str, Any]] | None,
) -> list[dict[str, Any]] | None:
    if not attachments:
        return None
    cleaned: list[dict[str, Any]] = []
    for attachment in attachments:
        if attachment.get("type") not in ATTACHMENT_TYPES:
            raise MessageValidationError("Attachment type is not supported")
        if not attachment.get("iv"):
            raise MessageValidationError("Each attachment must carry its own IV")
        cleaned.append(dict(attachment))
    return cleaned


class SqlAlchemyMessageStore(MessageStore):
    """MessageStore backed by a SQLAlchemy session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # Users and keys

    def get_user(self, user_id: int) -> User | None:
        return self.db.get(User, user_id)

    def set_public_key(self, user_id: int, public_key: str) -> User | None:
        user = self.get_user(user_id)
        if user is None:
            return None
        user.public_key = public_key
        self.db.commit()
        return user

    def get_public_key(self, user_id: int) -> str | None:
        user = self.get_user(user_id)
        return user.public_key if user is not None else None

    # Conversations

    def _conversation_for_pair(self, low: int, high: int) -> Conversation | None:
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.participant_low_id == low,
                Conversation.participant_high_id == high,
            )
            .first()
        )

    def find_or_create_conversation(self, user_a: int, user_b: int) -> Conversation:
        if user_a == user_b:
            raise MessageValidationError("Cannot start a conversation with yourself")
        low, high = Conversation.canonical_pair(user_a, user_b)
        existing = self._conversation_for_pair(low, high)
        if existing is not None:
            return existing

        conversation = Conversation(participant_low_id=low, participant_high_id=high)
        try:
            with self.db.begin_nested():
                self.db.add(conversation)
        except IntegrityError:
            # Another request created the pair first.
            logger.debug("Conversation %s/%s created concurrently; re-reading", low, high)
            existing = self._conversation_for_pair(low, high)
            if existing is None:
                raise
            return existing
        self.db.commit()
        return conversation

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        return self.db.get(Conversation, conversation_id)

    def is_participant(self, conversation: Conversation, user_id: int) -> bool:
        return conversation.has_participant(user_id)

    def list_conversations(
        self, user_id: int, limit: int, skip: int = 0
    ) -> list[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(
                or_(
                    Conversation.participant_low_id == user_id,
                    Conversation.participant_high_id == user_id,
                )
            )
            .order_by(
                Conversation.last_message_at.is_(None),
                desc(Conversation.last_message_at),
                desc(Conversation.id),
            )
            .offset(skip)
            .limit(limit)
            .all()
        )

    # Messages

    def create_message(
        self,
        conversation: Conversation,
        sender_id: int,
        recipient_id: int | None,
        content: Mapping[str, Any],
        message_type: str = "text",
        attachments: Sequence[Mapping[str, Any]] | None = None,
        reply_to_id: int | None = None,
        expires_in_ms: int | None = None,
    ) -> Message:
        if not isinstance(content, Mapping):
            raise MessageValidationError("Message must be encrypted")
        ciphertext = _decode_field(content, "encrypted", required=True)
        iv = _decode_field(content, "iv", required=True)
        auth_tag = _decode_field(content, "authTag", required=False)
        if message_type not in MESSAGE_TYPES:
            raise MessageValidationError(f"Unknown message type: {message_type}")
        if expires_in_ms is not None and expires_in_ms <= 0:
            raise MessageValidationError("expiresIn must be a positive number of milliseconds")
        if reply_to_id is not None:
            target = self.get_message(reply_to_id)
            if target is None or target.conversation_id != conversation.id:
                raise MessageValidationError("Reply target not found in this conversation")

        now = utcnow()
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=auth_tag,
            algorithm=content.get("algorithm") or DEFAULT_ALGORITHM,
            type=message_type,
            attachments=_validate_attachments(attachments),
            reply_to_id=reply_to_id,
            status=MESSAGE_STATUS_SENT,
            sent_at=now,
            expires_at=(
                now + timedelta(milliseconds=expires_in_ms) if expires_in_ms else None
            ),
        )
        self.db.add(message)
        self.db.flush()

        conversation.last_message_id = message.id
        conversation.last_message_sender_id = sender_id
        conversation.last_message_at = now
        self.db.commit()
        logger.debug(
            "Stored message %s in conversation %s from user %s",
            message.id,
            conversation.id,
            sender_id,
        )
        return message

    def get_message(self, message_id: int) -> Message | None:
        return self.db.get(Message, message_id)

    def _visible(self, requester: int | None = None) -> list[Any]:
        now = utcnow()
        criteria: list[Any] = [
            Message.deleted.is_(False),
            or_(Message.expires_at.is_(None), Message.expires_at > now),
        ]
        if requester is not None:
            criteria.append(~Message.deletions.any(MessageDeletion.user_id == requester))
        return criteria

    def get_conversation_messages(
        self,
        conversation_id: int,
        limit: int,
        before: datetime | None = None,
        after: datetime | None = None,
        requester: int | None = None,
    ) -> list[Message]:
        query = self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            *self._visible(requester),
        )
        if before is not None:
            query = query.filter(Message.sent_at < before)
        if after is not None:
            query = query.filter(Message.sent_at > after)
        return query.order_by(desc(Message.sent_at), desc(Message.id)).limit(limit).all()

    # Receipts

    def _add_receipt(self, message: Message, kind: str, user_id: int) -> bool:
        if message.has_receipt(kind, user_id):
            return False
        try:
            with self.db.begin_nested():
                message.receipts.append(MessageReceipt(user_id=user_id, kind=kind, at=utcnow()))
        except IntegrityError:
            # Recorded by another session after this message was loaded.
            logger.debug("Receipt %s/%s for message %s already stored", kind, user_id, message.id)
            self.db.refresh(message)
            return False
        return True

    def _apply_delivered(self, message: Message, user_id: int) -> bool:
        if not self._add_receipt(message, RECEIPT_DELIVERED, user_id):
            return False
        if message.status == MESSAGE_STATUS_SENT:
            message.status = MESSAGE_STATUS_DELIVERED
        return True

    def _apply_read(self, message: Message, user_id: int) -> bool:
        if not self._add_receipt(message, RECEIPT_READ, user_id):
            return False
        # Read implies delivered.
        self._add_receipt(message, RECEIPT_DELIVERED, user_id)
        message.status = MESSAGE_STATUS_READ
        return True

    def mark_delivered(self, message: Message, user_id: int) -> bool:
        changed = self._apply_delivered(message, user_id)
        if changed:
            self.db.commit()
        return changed

    def mark_read(self, message: Message, user_id: int) -> bool:
        changed = self._apply_read(message, user_id)
        if changed:
            self.db.commit()
        return changed

    def mark_all_read(self, user_id: int, conversation_id: int) -> int:
        unread = (
            self.db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.recipient_id == user_id,
                Message.status.in_(UNREAD_STATUSES),
                Message.deleted.is_(False),
            )
            .all()
        )
        updated = sum(1 for message in unread if self._apply_read(message, user_id))
        if updated:
            self.db.commit()
        return updated

    def mark_many_delivered(self, messages: Sequence[Message], user_id: int) -> list[Message]:
        promoted = [
            message
            for message in messages
            if message.status == MESSAGE_STATUS_SENT and self._apply_delivered(message, user_id)
        ]
        if promoted:
            self.db.commit()
        return promoted

    # Deletion

    def soft_delete(self, message: Message, for_user_id: int | None = None) -> None:
        if for_user_id is None:
            if not message.deleted:
                message.deleted = True
                message.deleted_at = utcnow()
                self.db.commit()
            return
        if for_user_id in message.deleted_for:
            return
        message.deletions.append(MessageDeletion(user_id=for_user_id, deleted_at=utcnow()))
        self.db.commit()

    # Counters and queues

    def get_unread_count(self, user_id: int, conversation_id: int | None = None) -> int:
        query = self.db.query(func.count(Message.id)).filter(
            Message.recipient_id == user_id,
            Message.status.in_(UNREAD_STATUSES),
            *self._visible(user_id),
        )
        if conversation_id is not None:
            query = query.filter(Message.conversation_id == conversation_id)
        return int(query.scalar() or 0)

    def get_pending_messages(self, user_id: int, limit: int) -> list[Message]:
        return (
            self.db.query(Message)
            .filter(
                and_(
                    Message.recipient_id == user_id,
                    Message.status == MESSAGE_STATUS_SENT,
                    *self._visible(),
                )
            )
            .order_by(Message.sent_at, Message.id)
            .limit(limit)
            .all()
        )


@contextmanager
def store_scope() -> Iterator[MessageStore]:
    """Open a session-backed store for work outside a request."""
    db = SessionLocal()
    try:
        yield SqlAlchemyMessageStore(db)
    finally:
        db.close()
