"""Authentication for realtime connections."""

from __future__ import annotations

import logging

from jose import ExpiredSignatureError, JWTError
from sqlalchemy.orm import Session

from parley.core.security import decode_access_token
from parley.db.time import utcnow
from parley.models import User

logger = logging.getLogger(__name__)

REASON_TOKEN_MISSING = "token missing"
REASON_TOKEN_EXPIRED = "token expired"
REASON_INVALID_TOKEN = "invalid token"
REASON_USER_NOT_FOUND = "user not found"
REASON_ACCOUNT_SUSPENDED = "account suspended"


class ConnectionRejected(Exception):
    """Raised when a realtime connection may not be established."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def extract_token(query_token: str | None, authorization: str | None) -> str | None:
    """Return the bearer token from the query string or the Authorization header."""
    if query_token:
        return query_token.strip() or None
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return None


def authenticate_connection(token: str | None, db: Session) -> User:
    """Resolve the user behind a connection token.

    Raises:
        ConnectionRejected: With one of the ``REASON_*`` values.
    """
    if not token:
        raise ConnectionRejected(REASON_TOKEN_MISSING)

    try:
        user_id = decode_access_token(token)
    except ExpiredSignatureError as err:
        raise ConnectionRejected(REASON_TOKEN_EXPIRED) from err
    except JWTError as err:
        raise ConnectionRejected(REASON_INVALID_TOKEN) from err

    user = db.get(User, user_id)
    if user is None:
        raise ConnectionRejected(REASON_USER_NOT_FOUND)
    if user.is_restricted:
        logger.info("Rejected realtime connection for restricted user %s", user_id)
        raise ConnectionRejected(REASON_ACCOUNT_SUSPENDED)

    user.last_active_at = utcnow()
    db.commit()
    return user
