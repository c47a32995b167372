"""Shared API dependencies for authentication and app-scoped components."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from parley.core.security import decode_access_token
from parley.db.session import get_db
from parley.models import User
from parley.realtime.hub import TransportHub
from parley.services.delivery_queue import DeliveryQueue
from parley.services.message_store import MessageStore, SqlAlchemyMessageStore
from parley.services.push import PushRelay

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> User:
    """Get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Bearer token credentials
        db: Database session

    Returns:
        User object for the authenticated user

    Raises:
        HTTPException: If token is invalid or user not found
    """
    try:
        user_id = decode_access_token(credentials.credentials)
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if user.is_restricted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account suspended",
        )
    return user


def get_message_store(db: SessionDep) -> MessageStore:
    """Return a store bound to the request's database session."""
    return SqlAlchemyMessageStore(db)


def get_hub(request: Request) -> TransportHub:
    return request.app.state.hub


def get_delivery_queue(request: Request) -> DeliveryQueue:
    return request.app.state.delivery_queue


def get_push_relay(request: Request) -> PushRelay:
    return request.app.state.push_relay


# Type aliases for dependency injection
CurrentUserDep = Annotated[User, Depends(get_current_user)]
StoreDep = Annotated[MessageStore, Depends(get_message_store)]
HubDep = Annotated[TransportHub, Depends(get_hub)]
DeliveryQueueDep = Annotated[DeliveryQueue, Depends(get_delivery_queue)]
PushRelayDep = Annotated[PushRelay, Depends(get_push_relay)]
