# src/parley/models/conversation.py
"""Models describing a pairwise conversation."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from parley.db.session import Base
from parley.db.time import utcnow


class Conversation(Base):
    """Addressable context of all messages between exactly two users.

    Participants are stored in canonical order so that a pair maps to one
    row regardless of who wrote first.
    """

    __tablename__ = "conversation"
    __table_args__ = (
        UniqueConstraint("participant_low_id", "participant_high_id", name="uq_conversation_pair"),
        CheckConstraint("participant_low_id < participant_high_id", name="ck_conversation_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_low_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id"), nullable=False, index=True
    )
    participant_high_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_account.id"), nullable=False, index=True
    )

    # Denormalized pointer to the newest message, used to sort conversation lists.
    last_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_message_sender_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @staticmethod
    def canonical_pair(user_a: int, user_b: int) -> tuple[int, int]:
        """Return the participant ids in storage order."""
        return (user_a, user_b) if user_a < user_b else (user_b, user_a)

    @property
    def participants(self) -> tuple[int, int]:
        return (self.participant_low_id, self.participant_high_id)

    def has_participant(self, user_id: int) -> bool:
        return user_id in self.participants

    def other_participant(self, user_id: int) -> int:
        """Return the participant that is not `user_id`."""
        if user_id == self.participant_low_id:
            return self.participant_high_id
        return self.participant_low_id
