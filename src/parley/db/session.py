"""Engine and session factory for the message database."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from parley.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base for users, conversations and messages."""


# Populate the metadata before create_all or alembic autogenerate looks at it.
import parley.models  # noqa: E402,F401


def _connect_args(url: str) -> dict[str, Any]:
    # The hub and delivery queue open sessions on the event loop thread while
    # request handlers run in the threadpool.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url_sync,
    connect_args=_connect_args(settings.database_url_sync),
    pool_pre_ping=True,
    echo=settings.sql_debug,
)

# Stored messages are serialized for fan-out after the commit that created
# them, so committed rows must stay readable without a reload.
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)


def get_db() -> Generator[Session, None, None]:
    """Yield a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
