"""initial messaging schema

Revision ID: 5b1e0c7a9d42
Revises:
Create Date: 2026-10-19 09:12:44.318204

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1e0c7a9d42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, conversations, messages, receipts and deletions."""
    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("public_key", sa.Text(), nullable=True),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "conversation",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("participant_low_id", sa.Integer(), nullable=False),
        sa.Column("participant_high_id", sa.Integer(), nullable=False),
        sa.Column("last_message_id", sa.Integer(), nullable=True),
        sa.Column("last_message_sender_id", sa.Integer(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "participant_low_id < participant_high_id", name="ck_conversation_order"
        ),
        sa.ForeignKeyConstraint(["participant_low_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["participant_high_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "participant_low_id", "participant_high_id", name="uq_conversation_pair"
        ),
    )
    op.create_index("ix_conversation_participant_low_id", "conversation", ["participant_low_id"])
    op.create_index("ix_conversation_participant_high_id", "conversation", ["participant_high_id"])
    op.create_index("ix_conversation_last_message_at", "conversation", ["last_message_at"])

    op.create_table(
        "message",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("conversation_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=True),
        sa.Column("ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("iv", sa.LargeBinary(), nullable=False),
        sa.Column("auth_tag", sa.LargeBinary(), nullable=True),
        sa.Column("algorithm", sa.String(length=32), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("reply_to_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversation.id"]),
        sa.ForeignKeyConstraint(["sender_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["recipient_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["reply_to_id"], ["message.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_conversation_id", "message", ["conversation_id"])
    op.create_index("ix_message_sender_id", "message", ["sender_id"])
    op.create_index("ix_message_status", "message", ["status"])
    op.create_index("ix_message_expires_at", "message", ["expires_at"])
    op.create_index(
        "ix_message_conversation_sent_at", "message", ["conversation_id", "sent_at"]
    )
    op.create_index("ix_message_recipient_status", "message", ["recipient_id", "status"])

    op.create_table(
        "message_receipt",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["message.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id", "user_id", "kind", name="uq_message_receipt"),
    )
    op.create_index("ix_message_receipt_message_id", "message_receipt", ["message_id"])

    op.create_table(
        "message_deletion",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["message.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("message_id", "user_id"),
    )


def downgrade() -> None:
    """Drop the messaging schema."""
    op.drop_table("message_deletion")
    op.drop_index("ix_message_receipt_message_id", table_name="message_receipt")
    op.drop_table("message_receipt")
    for index in (
        "ix_message_recipient_status",
        "ix_message_conversation_sent_at",
        "ix_message_expires_at",
        "ix_message_status",
        "ix_message_sender_id",
        "ix_message_conversation_id",
    ):
        op.drop_index(index, table_name="message")
    op.drop_table("message")
    for index in (
        "ix_conversation_last_message_at",
        "ix_conversation_participant_high_id",
        "ix_conversation_participant_low_id",
    ):
        op.drop_index(index, table_name="conversation")
    op.drop_table("conversation")
    op.drop_table("user_account")
