"""Presence tracking and event fan-out for realtime connections.

The hub knows which users are connected (possibly from several devices),
which rooms each connection has joined, and routes inbound client events.
Rooms are named ``user:<id>`` (every device of a user, joined automatically)
and ``conversation:<id>`` (joined explicitly by participants).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AbstractContextManager
from typing import Any

from parley.db.time import isoformat, utcnow
from parley.services.crypto import CryptoService, KeyExchangeError
from parley.services.message_store import MessageStore

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]
Closer = Callable[[], Awaitable[None]]
StoreFactory = Callable[[], AbstractContextManager[MessageStore]]

PRESENCE_STATUSES = ("online", "away", "busy", "offline")

_connection_ids = itertools.count(1)


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


class HubEventError(ValueError):
    """Raised by event handlers for requests the caller got wrong."""


class Connection:
    """One authenticated realtime connection (a single device)."""

    def __init__(
        self,
        user_id: int,
        sender: Sender,
        username: str | None = None,
        closer: Closer | None = None,
    ) -> None:
        self.id = next(_connection_ids)
        self.user_id = user_id
        self.username = username
        self.rooms: set[str] = set()
        self.closed = False
        self._sender = sender
        self._closer = closer

    async def send(self, event: str, data: Any) -> bool:
        """Send one event frame; returns False if the connection is gone."""
        if self.closed:
            return False
        try:
            await self._sender({"event": event, "data": data})
        except (ConnectionError, RuntimeError, OSError) as exc:
            logger.info("Dropping connection %s of user %s: %s", self.id, self.user_id, exc)
            self.closed = True
            return False
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._closer is not None:
            try:
                await self._closer()
            except (ConnectionError, RuntimeError, OSError) as exc:
                logger.debug("Error closing connection %s: %s", self.id, exc)

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, user_id={self.user_id})"


def _require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise HubEventError(f"{key} is required")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise HubEventError(f"{key} is required") from exc


class TransportHub:
    """Registry of live connections plus room membership and event routing."""

    def __init__(
        self,
        store_factory: StoreFactory | None = None,
        offline_grace_seconds: float = 5.0,
    ) -> None:
        self._store_factory = store_factory
        self.offline_grace_seconds = offline_grace_seconds
        self._connections: dict[int, Connection] = {}
        self._user_connections: dict[int, set[int]] = {}
        self._rooms: dict[str, set[int]] = {}
        self._offline_timers: dict[int, asyncio.Task[None]] = {}
        self._handlers: dict[str, Callable[[Connection, dict[str, Any]], Awaitable[None]]] = {
            "join:conversation": self._on_join,
            "leave:conversation": self._on_leave,
            "message:send": self._on_message_send,
            "message:delivered": self._on_message_delivered,
            "message:read": self._on_message_read,
            "typing:start": self._on_typing_start,
            "typing:stop": self._on_typing_stop,
            "presence:update": self._on_presence_update,
            "keys:exchange": self._on_keys_exchange,
        }

    # Presence

    async def connect(self, conn: Connection) -> None:
        """Register a connection and announce the user if they just came online."""
        user_id = conn.user_id
        pending_offline = self._offline_timers.pop(user_id, None)
        if pending_offline is not None:
            pending_offline.cancel()
        was_online = bool(self._user_connections.get(user_id)) or pending_offline is not None

        self._connections[conn.id] = conn
        self._user_connections.setdefault(user_id, set()).add(conn.id)
        self._add_to_room(conn, user_room(user_id))
        logger.info("User %s connected (connection %s)", user_id, conn.id)

        if not was_online:
            await self.broadcast(
                "user:status",
                {"userId": user_id, "status": "online"},
                exclude=conn,
            )

    async def disconnect(self, conn: Connection) -> None:
        """Deregister a connection; schedule the offline broadcast if it was the last one."""
        if self._connections.pop(conn.id, None) is None:
            return
        conn.closed = True
        for room in list(conn.rooms):
            self._remove_from_room(conn, room)

        user_id = conn.user_id
        remaining = self._user_connections.get(user_id)
        if remaining is not None:
            remaining.discard(conn.id)
            if not remaining:
                del self._user_connections[user_id]
        logger.info("User %s disconnected (connection %s)", user_id, conn.id)

        if not self.is_online(user_id) and user_id not in self._offline_timers:
            self._offline_timers[user_id] = asyncio.create_task(self._announce_offline(user_id))

    async def _announce_offline(self, user_id: int) -> None:
        try:
            await asyncio.sleep(self.offline_grace_seconds)
        except asyncio.CancelledError:
            return
        self._offline_timers.pop(user_id, None)
        if self.is_online(user_id):
            return
        await self.broadcast(
            "user:status",
            {"userId": user_id, "status": "offline", "lastSeen": isoformat(utcnow())},
        )

    def is_online(self, user_id: int) -> bool:
        return bool(self._user_connections.get(user_id))

    def online_users(self) -> list[int]:
        return sorted(self._user_connections)

    def connections_for(self, user_id: int) -> list[Connection]:
        return [self._connections[cid] for cid in sorted(self._user_connections.get(user_id, ()))]

    def rooms_for(self, user_id: int) -> set[str]:
        rooms: set[str] = set()
        for conn in self.connections_for(user_id):
            rooms |= conn.rooms
        return rooms

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # Rooms

    def _add_to_room(self, conn: Connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(conn.id)
        conn.rooms.add(room)

    def _remove_from_room(self, conn: Connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    async def join(self, conn: Connection, conversation_id: int) -> bool:
        """Add the connection to a conversation room if the user is a participant."""
        if self._store_factory is not None:
            with self._store_factory() as store:
                conversation = store.get_conversation(conversation_id)
                if conversation is None or not store.is_participant(conversation, conn.user_id):
                    return False
        self._add_to_room(conn, conversation_room(conversation_id))
        return True

    async def leave(self, conn: Connection, conversation_id: int) -> None:
        self._remove_from_room(conn, conversation_room(conversation_id))

    # Fan-out

    async def _fanout(
        self,
        connection_ids: Iterable[int],
        event: str,
        data: Any,
        exclude: Connection | None = None,
    ) -> int:
        delivered = 0
        dead: list[Connection] = []
        for conn_id in sorted(set(connection_ids)):
            conn = self._connections.get(conn_id)
            if conn is None or (exclude is not None and conn.id == exclude.id):
                continue
            if await conn.send(event, data):
                delivered += 1
            else:
                dead.append(conn)
        for conn in dead:
            await self.disconnect(conn)
        return delivered

    async def send_to_rooms(
        self,
        rooms: Iterable[str],
        event: str,
        data: Any,
        exclude: Connection | None = None,
    ) -> int:
        """Send once to every connection in any of `rooms`."""
        targets: set[int] = set()
        for room in rooms:
            targets |= self._rooms.get(room, set())
        return await self._fanout(targets, event, data, exclude=exclude)

    async def send_to_user(
        self, user_id: int, event: str, data: Any, exclude: Connection | None = None
    ) -> int:
        return await self.send_to_rooms([user_room(user_id)], event, data, exclude=exclude)

    async def send_to_conversation(
        self, conversation_id: int, event: str, data: Any, exclude: Connection | None = None
    ) -> int:
        return await self.send_to_rooms(
            [conversation_room(conversation_id)], event, data, exclude=exclude
        )

    async def broadcast(self, event: str, data: Any, exclude: Connection | None = None) -> int:
        return await self._fanout(list(self._connections), event, data, exclude=exclude)

    # Inbound events

    async def handle_event(self, conn: Connection, event: str, data: Any) -> None:
        """Route one inbound client event."""
        handler = self._handlers.get(event)
        if handler is None:
            await conn.send("message:error", {"error": f"Unknown event: {event}", "event": event})
            return
        if data is None:
            data = {}
        if not isinstance(data, dict):
            await conn.send("message:error", {"error": "Invalid payload", "event": event})
            return
        try:
            await handler(conn, data)
        except HubEventError as exc:
            await conn.send("message:error", {"error": str(exc), "event": event})
        except Exception:
            logger.exception("Unhandled error processing %s from user %s", event, conn.user_id)
            await conn.send("message:error", {"error": "Failed to process event", "event": event})

    async def _on_join(self, conn: Connection, data: dict[str, Any]) -> None:
        conversation_id = _require_int(data, "conversationId")
        if not await self.join(conn, conversation_id):
            raise HubEventError("Cannot access this conversation")
        await conn.send("conversation:joined", {"conversationId": conversation_id})

    async def _on_leave(self, conn: Connection, data: dict[str, Any]) -> None:
        await self.leave(conn, _require_int(data, "conversationId"))

    async def _on_message_send(self, conn: Connection, data: dict[str, Any]) -> None:
        conversation_id = _require_int(data, "conversationId")
        message = data.get("message")
        if not isinstance(message, dict):
            raise HubEventError("message is required")
        content = message.get("content") or {}
        if not isinstance(content, dict) or not content.get("encrypted") or not content.get("iv"):
            raise HubEventError("Message must be encrypted")

        recipient_id: int | None = None
        if self._store_factory is not None:
            with self._store_factory() as store:
                conversation = store.get_conversation(conversation_id)
                if conversation is None or not store.is_participant(conversation, conn.user_id):
                    raise HubEventError("Cannot access this conversation")
                recipient_id = conversation.other_participant(conn.user_id)
        elif data.get("recipientId") is not None:
            recipient_id = _require_int(data, "recipientId")

        relayed = {**message, "conversationId": conversation_id, "senderId": conn.user_id}
        await self.send_to_conversation(
            conversation_id, "message:new", {"message": relayed}, exclude=conn
        )
        if recipient_id is not None:
            await self.send_to_user(
                recipient_id,
                "message:notification",
                {
                    "conversationId": conversation_id,
                    "senderId": conn.user_id,
                    "messageId": message.get("id"),
                    "type": message.get("type", "text"),
                },
            )
        await conn.send(
            "message:sent",
            {
                "tempId": data.get("tempId"),
                "messageId": message.get("id"),
                "conversationId": conversation_id,
            },
        )

    async def _on_receipt(self, conn: Connection, data: dict[str, Any], kind: str) -> None:
        message_id = _require_int(data, "messageId")
        now = isoformat(utcnow())
        rooms: list[str] = []

        if self._store_factory is not None:
            with self._store_factory() as store:
                message = store.get_message(message_id)
                if message is None:
                    raise HubEventError("Message not found")
                if message.recipient_id != conn.user_id:
                    raise HubEventError("Only the recipient can acknowledge this message")
                if kind == "read":
                    changed = store.mark_read(message, conn.user_id)
                else:
                    changed = store.mark_delivered(message, conn.user_id)
                if not changed:
                    return
                conversation_id = message.conversation_id
                rooms.append(user_room(message.sender_id))
        else:
            conversation_id = _require_int(data, "conversationId")
            if data.get("senderId") is not None:
                rooms.append(user_room(_require_int(data, "senderId")))

        rooms.append(conversation_room(conversation_id))
        if kind == "read":
            event = "message:read"
            payload = {
                "messageId": message_id,
                "conversationId": conversation_id,
                "readBy": conn.user_id,
                "readAt": now,
            }
        else:
            event = "message:delivered"
            payload = {
                "messageId": message_id,
                "conversationId": conversation_id,
                "deliveredTo": conn.user_id,
                "deliveredAt": now,
            }
        await self.send_to_rooms(rooms, event, payload, exclude=conn)

    async def _on_message_delivered(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._on_receipt(conn, data, "delivered")

    async def _on_message_read(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._on_receipt(conn, data, "read")

    async def _relay_typing(self, conn: Connection, data: dict[str, Any], event: str) -> None:
        conversation_id = _require_int(data, "conversationId")
        if conversation_room(conversation_id) not in conn.rooms:
            raise HubEventError("Join the conversation first")
        await self.send_to_conversation(
            conversation_id,
            event,
            {"conversationId": conversation_id, "userId": conn.user_id, "username": conn.username},
            exclude=conn,
        )

    async def _on_typing_start(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._relay_typing(conn, data, "typing:start")

    async def _on_typing_stop(self, conn: Connection, data: dict[str, Any]) -> None:
        await self._relay_typing(conn, data, "typing:stop")

    async def _on_presence_update(self, conn: Connection, data: dict[str, Any]) -> None:
        presence = data.get("status")
        if presence not in PRESENCE_STATUSES:
            raise HubEventError("Unknown presence status")
        await self.broadcast(
            "user:status", {"userId": conn.user_id, "status": presence}, exclude=conn
        )

    async def _on_keys_exchange(self, conn: Connection, data: dict[str, Any]) -> None:
        recipient_id = _require_int(data, "recipientId")
        public_key = data.get("publicKey")
        try:
            CryptoService.load_public_key(public_key)  # type: ignore[arg-type]
        except KeyExchangeError as exc:
            raise HubEventError("Invalid public key") from exc

        if self._store_factory is not None:
            with self._store_factory() as store:
                store.set_public_key(conn.user_id, public_key)  # type: ignore[arg-type]

        await self.send_to_user(
            recipient_id,
            "keys:received",
            {"senderId": conn.user_id, "publicKey": public_key},
        )

    # Lifecycle

    async def shutdown(self) -> None:
        """Cancel timers and close every connection."""
        timers = list(self._offline_timers.values())
        self._offline_timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        connections = list(self._connections.values())
        self._connections.clear()
        self._user_connections.clear()
        self._rooms.clear()
        for conn in connections:
            await conn.close()
        logger.info("Transport hub shut down (%d connections closed)", len(connections))
