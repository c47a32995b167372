"""Realtime presence and transport."""

from .auth import ConnectionRejected, authenticate_connection
from .hub import Connection, TransportHub

__all__ = ["Connection", "ConnectionRejected", "TransportHub", "authenticate_connection"]
