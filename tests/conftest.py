# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Generator, Iterator
from contextlib import contextmanager
from itertools import count
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-parley")

from parley.core.security import create_access_token
from parley.db.session import Base
from parley.db.session import get_db as app_get_session
from parley.main import app as fastapi_app
from parley.models import Conversation, User
from parley.models.user import USER_STATUS_SUSPENDED
from parley.services.crypto import CryptoService
from parley.services.message_store import MessageStore, SqlAlchemyMessageStore

TEST_DB_URL = "sqlite://"

_USERNAME_COUNTER = count(1)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()

        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def store_factory(db_session: Session) -> Callable[[], Any]:
    """Store factory bound to the per-test session, as used by the hub and queue."""

    @contextmanager
    def _scope() -> Iterator[MessageStore]:
        yield SqlAlchemyMessageStore(db_session)

    return _scope


@pytest.fixture()
def file_store_factory(tmp_path) -> Iterator[Callable[[], Any]]:
    """Store factory over a file database that opens a fresh session per scope.

    Lets tests interleave work the way separate request and background
    sessions do in production.
    """
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'parley.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=file_engine)
    SessionFactory = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _scope() -> Iterator[MessageStore]:
        db = SessionFactory()
        try:
            yield SqlAlchemyMessageStore(db)
        finally:
            db.close()

    try:
        yield _scope
    finally:
        file_engine.dispose()


@pytest.fixture(autouse=True)
def override_store_factory(app: FastAPI, store_factory: Callable[[], Any]) -> Iterator[None]:
    app.state.store_factory = store_factory
    try:
        yield
    finally:
        app.state.store_factory = None


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def store(db_session: Session) -> SqlAlchemyMessageStore:
    return SqlAlchemyMessageStore(db_session)


def _create_user(db_session: Session, name: str, **fields: Any) -> User:
    user = User(username=f"{name}-{next(_USERNAME_COUNTER)}", **fields)
    db_session.add(user)
    db_session.flush()
    db_session.refresh(user)
    return user


@pytest.fixture()
def test_user(db_session: Session) -> User:
    """Create and return a persisted test user."""
    return _create_user(db_session, "alice")


@pytest.fixture()
def other_user(db_session: Session) -> User:
    """Create and return a second persisted user."""
    return _create_user(db_session, "bob")


@pytest.fixture()
def third_user(db_session: Session) -> User:
    """A user outside the test conversation."""
    return _create_user(db_session, "carol")


@pytest.fixture()
def suspended_user(db_session: Session) -> User:
    return _create_user(db_session, "mallory", status=USER_STATUS_SUSPENDED)


@pytest.fixture()
def auth_token(test_user: User) -> dict[str, str]:
    """Return authorization headers for the primary test user."""
    token = create_access_token(test_user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def other_auth_token(other_user: User) -> dict[str, str]:
    """Return authorization headers for the secondary test user."""
    token = create_access_token(other_user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def third_auth_token(third_user: User) -> dict[str, str]:
    token = create_access_token(third_user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def conversation(
    store: SqlAlchemyMessageStore, test_user: User, other_user: User
) -> Conversation:
    """Conversation between the primary and secondary users."""
    return store.find_or_create_conversation(test_user.id, other_user.id)


@pytest.fixture()
def conversation_key() -> bytes:
    return CryptoService.generate_key()


@pytest.fixture()
def make_content(conversation_key: bytes) -> Callable[[str], dict[str, str]]:
    """Return a helper that encrypts text into the wire content form."""

    def _make(text: str = "hello") -> dict[str, str]:
        return CryptoService.encrypt(text, conversation_key).to_wire()

    return _make


@pytest.fixture()
def wait_for() -> Callable[..., Awaitable[None]]:
    """Poll a condition until it holds or the timeout expires."""

    async def _wait(condition: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait
