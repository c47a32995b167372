"""Tests for realtime connection authentication."""

from datetime import timedelta

import pytest

from parley.core.security import create_access_token
from parley.realtime.auth import (
    REASON_ACCOUNT_SUSPENDED,
    REASON_INVALID_TOKEN,
    REASON_TOKEN_EXPIRED,
    REASON_TOKEN_MISSING,
    REASON_USER_NOT_FOUND,
    ConnectionRejected,
    authenticate_connection,
    extract_token,
)


def test_extract_token_prefers_query() -> None:
    assert extract_token("abc", "Bearer def") == "abc"
    assert extract_token(None, "Bearer def") == "def"
    assert extract_token(None, "Basic def") is None
    assert extract_token("", None) is None


def test_valid_token_returns_user(db_session, test_user) -> None:
    user = authenticate_connection(create_access_token(test_user.id), db_session)

    assert user.id == test_user.id
    assert user.last_active_at is not None


@pytest.mark.parametrize(
    ("token_factory", "reason"),
    [
        (lambda user: None, REASON_TOKEN_MISSING),
        (lambda user: "not-a-jwt", REASON_INVALID_TOKEN),
        (
            lambda user: create_access_token(user.id, expires_delta=timedelta(minutes=-1)),
            REASON_TOKEN_EXPIRED,
        ),
        (lambda user: create_access_token(999_999), REASON_USER_NOT_FOUND),
    ],
)
def test_rejection_reasons(db_session, test_user, token_factory, reason) -> None:
    with pytest.raises(ConnectionRejected) as exc_info:
        authenticate_connection(token_factory(test_user), db_session)

    assert exc_info.value.reason == reason


def test_suspended_user_is_rejected(db_session, suspended_user) -> None:
    with pytest.raises(ConnectionRejected) as exc_info:
        authenticate_connection(create_access_token(suspended_user.id), db_session)

    assert exc_info.value.reason == REASON_ACCOUNT_SUSPENDED
