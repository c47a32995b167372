# src/parley/models/user.py
"""Minimal user identity used by the messaging core.

Profiles, the social graph and credential issuance live in the host
application; this table only carries what delivery and key exchange need.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from parley.db.session import Base
from parley.db.time import utcnow

USER_STATUS_ACTIVE = "active"
USER_STATUS_SUSPENDED = "suspended"
USER_STATUS_BANNED = "banned"


class User(Base):
    """Account known to the messaging service."""

    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # 'active', 'suspended' or 'banned'; only active accounts may connect.
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=USER_STATUS_ACTIVE)
    # Base64 SPKI of the user's current ECDH public key; used only to bootstrap exchange.
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def is_restricted(self) -> bool:
        """Return True when the account may not open realtime connections."""
        return self.status in (USER_STATUS_SUSPENDED, USER_STATUS_BANNED)
