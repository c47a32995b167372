"""Client messaging session.

A session owns one user's realtime connection, their key ring and a local
view of conversations. Outgoing messages are encrypted here, persisted over
REST and announced over the realtime channel; incoming messages are decrypted
here and acknowledged with delivery receipts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from parley.client.api import MessagingApiClient, MessagingApiError
from parley.client.keyring import KeyRing, conversation_slot, peer_slot
from parley.client.transport import Transport, TransportError
from parley.services.crypto import (
    CryptoError,
    CryptoService,
    EncryptedPayload,
    EncryptionError,
    KeyExchangeError,
)

logger = logging.getLogger(__name__)

PHASE_PENDING = "pending"
PHASE_CONFIRMED = "confirmed"
PHASE_FAILED = "failed"

# Ordering of server-side statuses; a local copy never moves backwards.
_STATUS_RANK = {"sending": 0, "sent": 1, "delivered": 2, "read": 3}

Listener = Callable[[Any], None]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class SessionError(RuntimeError):
    """Raised for session-level failures such as a rejected connection."""


@dataclass
class SessionConfig:
    """Client-side tuning."""

    typing_timeout: float = 3.0
    reconnect_attempts: int = 10
    reconnect_delay: float = 1.0
    handshake_timeout: float = 10.0


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass
class LocalMessage:
    """A message as the local user sees it."""

    correlation_id: str
    conversation_id: int | None
    sender_id: int
    id: int | None = None
    recipient_id: int | None = None
    plaintext: str | None = None
    decryptable: bool = True
    phase: str = PHASE_CONFIRMED
    status: str = "sending"
    type: str = "text"
    sent_at: datetime | None = None
    delivered_to: set[int] = field(default_factory=set)
    read_by: set[int] = field(default_factory=set)

    @classmethod
    def from_wire(
        cls, raw: dict[str, Any], plaintext: str | None, decryptable: bool
    ) -> LocalMessage:
        return cls(
            correlation_id=f"server_{raw.get('id')}",
            conversation_id=raw.get("conversationId"),
            sender_id=raw.get("senderId"),  # type: ignore[arg-type]
            id=raw.get("id"),
            recipient_id=raw.get("recipientId"),
            plaintext=plaintext,
            decryptable=decryptable,
            status=raw.get("status") or "sent",
            type=raw.get("type") or "text",
            sent_at=_parse_time(raw.get("sentAt")),
            delivered_to={r["userId"] for r in raw.get("deliveredTo") or []},
            read_by={r["userId"] for r in raw.get("readBy") or []},
        )

    def advance_status(self, status: str) -> None:
        if _STATUS_RANK.get(status, -1) > _STATUS_RANK.get(self.status, -1):
            self.status = status


class ConversationView:
    """Ordered local messages of one conversation, keyed by correlation id."""

    def __init__(self, conversation_id: int) -> None:
        self.conversation_id = conversation_id
        self._messages: dict[str, LocalMessage] = {}
        self._by_id: dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: int) -> LocalMessage | None:
        correlation_id = self._by_id.get(message_id)
        return self._messages.get(correlation_id) if correlation_id else None

    def get_local(self, correlation_id: str) -> LocalMessage | None:
        return self._messages.get(correlation_id)

    def add_pending(self, message: LocalMessage) -> None:
        message.phase = PHASE_PENDING
        self._messages[message.correlation_id] = message

    def confirm(self, correlation_id: str, raw: dict[str, Any]) -> LocalMessage | None:
        """Attach the server's copy to a pending entry."""
        local = self._messages.get(correlation_id)
        if local is None:
            return None
        message_id = raw.get("id")
        duplicate = self._by_id.get(message_id) if message_id is not None else None
        if duplicate is not None and duplicate != correlation_id:
            # The realtime echo arrived before the REST response.
            self._messages.pop(duplicate, None)
        local.id = message_id
        local.conversation_id = raw.get("conversationId", local.conversation_id)
        local.recipient_id = raw.get("recipientId", local.recipient_id)
        local.sent_at = _parse_time(raw.get("sentAt")) or local.sent_at
        local.phase = PHASE_CONFIRMED
        local.advance_status(raw.get("status") or "sent")
        if message_id is not None:
            self._by_id[message_id] = correlation_id
        return local

    def fail(self, correlation_id: str) -> LocalMessage | None:
        local = self._messages.get(correlation_id)
        if local is not None:
            local.phase = PHASE_FAILED
            local.status = "failed"
        return local

    def upsert(self, message: LocalMessage) -> tuple[LocalMessage, bool]:
        """Insert a server message or merge it into the copy already held.

        Returns the stored message and whether it was new.
        """
        if message.id is not None:
            existing = self.get(message.id)
            if existing is not None:
                existing.advance_status(message.status)
                existing.delivered_to |= message.delivered_to
                existing.read_by |= message.read_by
                if existing.plaintext is None and message.plaintext is not None:
                    existing.plaintext = message.plaintext
                    existing.decryptable = True
                return existing, False
            self._by_id[message.id] = message.correlation_id
        self._messages[message.correlation_id] = message
        return message, True

    def remove(self, message_id: int) -> LocalMessage | None:
        correlation_id = self._by_id.pop(message_id, None)
        if correlation_id is None:
            return None
        return self._messages.pop(correlation_id, None)

    def ordered(self) -> list[LocalMessage]:
        """Messages by send time; unconfirmed ones last in insertion order."""
        indexed = list(enumerate(self._messages.values()))
        indexed.sort(
            key=lambda item: (
                item[1].sent_at is None,
                item[1].sent_at.timestamp() if item[1].sent_at else 0.0,
                item[0],
            )
        )
        return [message for _, message in indexed]


class MessagingSession:
    """One user's end-to-end encrypted messaging session."""

    def __init__(
        self,
        user_id: int,
        api: MessagingApiClient,
        transport: Transport,
        config: SessionConfig | None = None,
        keyring: KeyRing | None = None,
    ) -> None:
        self.user_id = user_id
        self.api = api
        self.transport = transport
        self.config = config or SessionConfig()
        self.keyring = keyring or KeyRing()

        self.state = ConnectionState.DISCONNECTED
        self.conversations: dict[int, dict[str, Any]] = {}
        self.views: dict[int, ConversationView] = {}
        self.typing_users: dict[int, set[int]] = {}
        self.online_users: set[int] = set()
        self.unread_counts: dict[int, int] = {}
        self.active_conversation: int | None = None

        self._participants: dict[int, tuple[int, int]] = {}
        self._joined: set[int] = set()
        self._unrouted: dict[str, LocalMessage] = {}
        # Receipts for our own messages that beat the REST response.
        self._early_receipts: dict[int, list[tuple[str, int | None]]] = {}
        self._answered_peers: set[int] = set()
        self._listeners: dict[str, list[Listener]] = {}
        self._typing_timers: dict[int, asyncio.Task[None]] = {}
        self._reader: asyncio.Task[None] | None = None
        self._reconnector: asyncio.Task[None] | None = None
        self._handshake: asyncio.Future[None] | None = None
        self._rejected: str | None = None
        self._closed = False

        self._handlers: dict[str, Callable[[Any], Any]] = {
            "session:ready": self._on_ready,
            "connect_error": self._on_connect_error,
            "message:new": self._on_message_new,
            "messages:pending": self._on_messages_pending,
            "message:sent": self._on_message_sent,
            "message:error": self._on_message_error,
            "message:delivered": self._on_message_delivered,
            "messages:delivered": self._on_messages_delivered,
            "message:read": self._on_message_read,
            "messages:read": self._on_messages_read,
            "message:deleted": self._on_message_deleted,
            "message:notification": self._on_notification,
            "typing:start": self._on_typing_start,
            "typing:stop": self._on_typing_stop,
            "user:status": self._on_user_status,
            "keys:received": self._on_keys_received,
            "conversation:joined": self._on_conversation_joined,
        }

    # Listeners

    def on(self, event: str, listener: Listener) -> None:
        """Register a callback for a session event (e.g. ``message``, ``typing``)."""
        self._listeners.setdefault(event, []).append(listener)

    def _emit(self, event: str, payload: Any) -> None:
        for listener in self._listeners.get(event, []):
            listener(payload)

    # Connection lifecycle

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def connect(self) -> None:
        """Connect, retrying up to the configured number of attempts.

        Raises:
            SessionError: If the server rejects the connection or every attempt fails.
        """
        if self._closed:
            raise SessionError("Session is closed")
        if self.connected:
            return
        last_error: Exception | None = None
        for attempt in range(1, self.config.reconnect_attempts + 1):
            try:
                await self._establish()
                return
            except TransportError as exc:
                last_error = exc
                logger.info("Connection attempt %d failed: %s", attempt, exc)
                if attempt < self.config.reconnect_attempts:
                    await asyncio.sleep(self.config.reconnect_delay)
        self.state = ConnectionState.DISCONNECTED
        raise SessionError(f"Could not connect: {last_error}")

    async def _establish(self) -> None:
        self.state = ConnectionState.CONNECTING
        self._rejected = None
        try:
            await self.transport.connect()
        except TransportError:
            self.state = ConnectionState.DISCONNECTED
            raise

        loop = asyncio.get_running_loop()
        self._handshake = loop.create_future()
        self._reader = asyncio.create_task(self._read_loop())
        try:
            await asyncio.wait_for(
                asyncio.shield(self._handshake), timeout=self.config.handshake_timeout
            )
        except TimeoutError as exc:
            await self._drop_transport()
            raise TransportError("Timed out waiting for session:ready") from exc
        except (SessionError, TransportError):
            await self._drop_transport()
            raise

        for conversation_id in sorted(self._joined):
            await self._send_event("join:conversation", {"conversationId": conversation_id})

    async def _drop_transport(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await self.transport.close()

    async def _read_loop(self) -> None:
        while True:
            frame = await self.transport.receive()
            if frame is None:
                break
            event, data = frame
            await self._dispatch(event, data)
        self._connection_lost()

    async def _dispatch(self, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring unknown event %s", event)
            return
        try:
            result = handler(data)
            if asyncio.iscoroutine(result):
                await result
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed %s event: %s", event, exc)

    def _connection_lost(self) -> None:
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_exception(TransportError("Connection closed during handshake"))
        was_connected = self.connected
        self.state = ConnectionState.DISCONNECTED
        self._reader = None
        if self._closed or self._rejected is not None or not was_connected:
            return
        logger.info("Connection lost; reconnecting")
        self._reconnector = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        for attempt in range(1, self.config.reconnect_attempts + 1):
            await asyncio.sleep(self.config.reconnect_delay)
            if self._closed:
                return
            try:
                await self._establish()
            except TransportError as exc:
                logger.info("Reconnect attempt %d failed: %s", attempt, exc)
                continue
            except SessionError as exc:
                logger.warning("Reconnect rejected: %s", exc)
                return
            logger.info("Reconnected after %d attempt(s)", attempt)
            self._emit("reconnected", attempt)
            return
        logger.warning("Giving up after %d reconnect attempts", self.config.reconnect_attempts)
        self._emit("disconnected", None)

    async def close(self) -> None:
        """Close the session for good."""
        self._closed = True
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        reconnector, self._reconnector = self._reconnector, None
        if reconnector is not None:
            reconnector.cancel()
            await asyncio.gather(reconnector, return_exceptions=True)
        await self._drop_transport()
        self.state = ConnectionState.CLOSED

    async def _send_event(self, event: str, data: Any) -> bool:
        if not self.connected:
            return False
        try:
            await self.transport.send(event, data)
        except TransportError as exc:
            logger.info("Could not send %s: %s", event, exc)
            return False
        return True

    # Keys

    def _peer_of(self, conversation_id: int | None) -> int | None:
        participants = self._participants.get(conversation_id) if conversation_id else None
        if participants is None:
            return None
        low, high = participants
        return high if low == self.user_id else low

    def _remember_participants(self, conversation_id: int | None, *user_ids: Any) -> None:
        if conversation_id is None:
            return
        ids = {uid for uid in user_ids if isinstance(uid, int)}
        ids.add(self.user_id)
        if len(ids) == 2:
            low, high = sorted(ids)
            self._participants[conversation_id] = (low, high)

    def _resolve_key(self, conversation_id: int | None, peer_id: int | None) -> bytes:
        key = self.keyring.key_for(conversation_id, peer_id)
        if key is not None:
            return key
        key = CryptoService.generate_key()
        slot = (
            conversation_slot(conversation_id)
            if conversation_id is not None
            else peer_slot(peer_id)  # type: ignore[arg-type]
        )
        self.keyring.set(slot, key)
        return key

    def _adopt_peer_key(self, peer_id: int, peer_public_key: str) -> None:
        key = self.keyring.derive_for_peer(peer_id, peer_public_key)
        for conversation_id in list(self._participants):
            if self._peer_of(conversation_id) == peer_id:
                self.keyring.set(conversation_slot(conversation_id), key)

    async def exchange_keys(self, peer_id: int) -> bool:
        """Publish this session's public key and derive the peer key if available.

        Returns True once a shared key with `peer_id` exists.
        """
        await self.api.exchange_keys(peer_id, self.keyring.public_key)
        peer_public_key = await self.api.get_public_key(peer_id)
        if not peer_public_key:
            return False
        try:
            self._adopt_peer_key(peer_id, peer_public_key)
        except KeyExchangeError as exc:
            logger.warning("Peer %s published an unusable key: %s", peer_id, exc)
            return False
        return True

    async def _on_keys_received(self, data: dict[str, Any]) -> None:
        sender_id = data["senderId"]
        try:
            self._adopt_peer_key(sender_id, data["publicKey"])
        except KeyExchangeError as exc:
            logger.warning("Ignoring unusable key from user %s: %s", sender_id, exc)
            return
        if sender_id not in self._answered_peers:
            self._answered_peers.add(sender_id)
            await self._send_event(
                "keys:exchange",
                {"recipientId": sender_id, "publicKey": self.keyring.public_key},
            )
        self._emit("keys", sender_id)

    # Inbound messages

    def _view(self, conversation_id: int) -> ConversationView:
        view = self.views.get(conversation_id)
        if view is None:
            view = self.views[conversation_id] = ConversationView(conversation_id)
        return view

    def _decrypt(self, raw: dict[str, Any]) -> tuple[str | None, bool]:
        conversation_id = raw.get("conversationId")
        sender_id = raw.get("senderId")
        peer_id = sender_id if sender_id != self.user_id else raw.get("recipientId")
        if peer_id is None:
            peer_id = self._peer_of(conversation_id)
        key = self.keyring.key_for(conversation_id, peer_id)
        if key is None:
            return None, False
        try:
            payload = EncryptedPayload.from_wire(raw.get("content") or {})
            return CryptoService.decrypt(payload, key), True
        except CryptoError:
            logger.debug("Could not decrypt message %s", raw.get("id"))
            return None, False

    def _ingest(self, raw: dict[str, Any]) -> tuple[LocalMessage, bool] | None:
        conversation_id = raw.get("conversationId")
        if conversation_id is None:
            return None
        self._remember_participants(conversation_id, raw.get("senderId"), raw.get("recipientId"))
        view = self._view(conversation_id)
        message_id = raw.get("id")
        existing = view.get(message_id) if message_id is not None else None
        if existing is not None and existing.plaintext is not None:
            return view.upsert(LocalMessage.from_wire(raw, None, existing.decryptable))
        plaintext, decryptable = self._decrypt(raw)
        return view.upsert(LocalMessage.from_wire(raw, plaintext, decryptable))

    async def _receive(self, raw: dict[str, Any]) -> None:
        ingested = self._ingest(raw)
        if ingested is None:
            return
        message, is_new = ingested
        if not is_new or message.sender_id == self.user_id:
            return
        conversation_id = message.conversation_id
        if conversation_id != self.active_conversation:
            self.unread_counts[conversation_id] = self.unread_counts.get(conversation_id, 0) + 1
        if message.id is not None:
            await self._send_event(
                "message:delivered",
                {"messageId": message.id, "conversationId": conversation_id},
            )
        self._emit("message", message)

    async def _on_message_new(self, data: dict[str, Any]) -> None:
        await self._receive(data["message"])

    async def _on_messages_pending(self, data: dict[str, Any]) -> None:
        for raw in data.get("messages", []):
            await self._receive(raw)

    def _on_ready(self, data: dict[str, Any]) -> None:
        self.online_users = set(data.get("onlineUsers") or [])
        # Frames queued behind session:ready may need to send receipts.
        self.state = ConnectionState.CONNECTED
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_result(None)

    def _on_connect_error(self, data: dict[str, Any]) -> None:
        self._rejected = str(data.get("reason", "rejected"))
        logger.warning("Connection rejected: %s", self._rejected)
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(SessionError(self._rejected))

    def _on_message_sent(self, data: dict[str, Any]) -> None:
        logger.debug("Relay acknowledged message %s", data.get("messageId"))

    def _on_message_error(self, data: dict[str, Any]) -> None:
        logger.warning("Server reported error: %s", data.get("error"))
        self._emit("error", data)

    def _apply_receipt(self, message_id: int, conversation_id: int | None, status: str,
                       user_id: int | None) -> None:
        views = (
            [self.views[conversation_id]]
            if conversation_id in self.views
            else list(self.views.values())
        )
        for view in views:
            message = view.get(message_id)
            if message is None:
                continue
            message.advance_status(status)
            if user_id is not None:
                if status == "read":
                    message.read_by.add(user_id)
                message.delivered_to.add(user_id)
            self._emit("status", message)
            return
        if user_id != self.user_id and self._has_pending_sends():
            self._early_receipts.setdefault(message_id, []).append((status, user_id))

    def _has_pending_sends(self) -> bool:
        if self._unrouted:
            return True
        return any(
            message.phase == PHASE_PENDING
            for view in self.views.values()
            for message in view.ordered()
        )

    def _replay_early_receipts(self, message: LocalMessage) -> None:
        if message.id is None:
            return
        for status, user_id in self._early_receipts.pop(message.id, []):
            self._apply_receipt(message.id, message.conversation_id, status, user_id)

    def _on_message_delivered(self, data: dict[str, Any]) -> None:
        self._apply_receipt(
            data["messageId"], data.get("conversationId"), "delivered", data.get("deliveredTo")
        )

    def _on_messages_delivered(self, data: dict[str, Any]) -> None:
        for message_id in data.get("messageIds", []):
            self._apply_receipt(message_id, None, "delivered", data.get("deliveredTo"))

    def _on_message_read(self, data: dict[str, Any]) -> None:
        self._apply_receipt(
            data["messageId"], data.get("conversationId"), "read", data.get("readBy")
        )

    def _on_messages_read(self, data: dict[str, Any]) -> None:
        view = self.views.get(data["conversationId"])
        reader = data.get("readBy")
        if view is None or reader == self.user_id:
            return
        for message in view.ordered():
            if message.sender_id == self.user_id and message.id is not None:
                message.advance_status("read")
                if reader is not None:
                    message.read_by.add(reader)
        self._emit("status", data)

    def _on_message_deleted(self, data: dict[str, Any]) -> None:
        view = self.views.get(data["conversationId"])
        if view is not None and view.remove(data["messageId"]) is not None:
            self._emit("deleted", data)

    def _on_notification(self, data: dict[str, Any]) -> None:
        self._emit("notification", data)

    def _on_typing_start(self, data: dict[str, Any]) -> None:
        self.typing_users.setdefault(data["conversationId"], set()).add(data["userId"])
        self._emit("typing", data)

    def _on_typing_stop(self, data: dict[str, Any]) -> None:
        self.typing_users.get(data["conversationId"], set()).discard(data["userId"])
        self._emit("typing", data)

    def _on_user_status(self, data: dict[str, Any]) -> None:
        if data.get("status") == "offline":
            self.online_users.discard(data["userId"])
        else:
            self.online_users.add(data["userId"])
        self._emit("presence", data)

    def _on_conversation_joined(self, data: dict[str, Any]) -> None:
        logger.debug("Joined conversation %s", data.get("conversationId"))

    # Outbound

    async def send_message(
        self,
        text: str,
        conversation_id: int | None = None,
        recipient_id: int | None = None,
        message_type: str = "text",
        reply_to: int | None = None,
        expires_in: int | None = None,
    ) -> LocalMessage:
        """Encrypt and send a message.

        Returns the local entry; its phase is ``confirmed`` once the server
        stored the message and ``failed`` if the REST call did not succeed.

        Raises:
            SessionError: If no target is given or encryption fails.
        """
        if (conversation_id is None) == (recipient_id is None):
            raise SessionError("Exactly one of conversation_id or recipient_id is required")
        peer_id = recipient_id if recipient_id is not None else self._peer_of(conversation_id)
        key = self._resolve_key(conversation_id, peer_id)
        try:
            payload = CryptoService.encrypt(text, key)
        except EncryptionError as exc:
            raise SessionError("Could not encrypt message") from exc

        local = LocalMessage(
            correlation_id=f"local_{uuid.uuid4().hex}",
            conversation_id=conversation_id,
            sender_id=self.user_id,
            recipient_id=peer_id,
            plaintext=text,
            type=message_type,
        )
        if conversation_id is not None:
            self._view(conversation_id).add_pending(local)
        else:
            local.phase = PHASE_PENDING
            self._unrouted[local.correlation_id] = local

        try:
            created = await self.api.send_message(
                payload.to_wire(),
                conversation_id=conversation_id,
                recipient_id=recipient_id,
                message_type=message_type,
                reply_to=reply_to,
                expires_in=expires_in,
            )
        except MessagingApiError as exc:
            logger.warning("Sending message failed: %s", exc.detail)
            if conversation_id is not None:
                self._view(conversation_id).fail(local.correlation_id)
            else:
                local.phase = PHASE_FAILED
                local.status = "failed"
            return local

        created_conversation = created["conversationId"]
        self._remember_participants(created_conversation, created.get("recipientId"))
        if conversation_id is None:
            self._unrouted.pop(local.correlation_id, None)
            view = self._view(created_conversation)
            view.add_pending(local)
        else:
            view = self._view(conversation_id)
        view.confirm(local.correlation_id, created)
        self._replay_early_receipts(local)

        await self._send_event(
            "message:send",
            {
                "conversationId": created_conversation,
                "message": created,
                "tempId": local.correlation_id,
            },
        )
        return local

    async def send_typing(self, conversation_id: int, is_typing: bool = True) -> None:
        """Signal typing; a stop is sent automatically after a quiet period."""
        timer = self._typing_timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
        if not is_typing:
            await self._send_event("typing:stop", {"conversationId": conversation_id})
            return
        if timer is None:
            await self._send_event("typing:start", {"conversationId": conversation_id})
        self._typing_timers[conversation_id] = asyncio.create_task(
            self._typing_timeout(conversation_id)
        )

    async def _typing_timeout(self, conversation_id: int) -> None:
        await asyncio.sleep(self.config.typing_timeout)
        self._typing_timers.pop(conversation_id, None)
        await self._send_event("typing:stop", {"conversationId": conversation_id})

    # REST-backed local view

    async def load_conversations(self, limit: int | None = None) -> list[dict[str, Any]]:
        data = await self.api.get_conversations(limit=limit)
        conversations = data["conversations"]
        for conversation in conversations:
            conversation_id = conversation["id"]
            self.conversations[conversation_id] = conversation
            self.unread_counts[conversation_id] = conversation.get("unreadCount", 0)
            participants = conversation.get("participants") or []
            self._remember_participants(conversation_id, *(p["id"] for p in participants))
            for participant in participants:
                if participant.get("online"):
                    self.online_users.add(participant["id"])
        return conversations

    async def load_messages(
        self,
        conversation_id: int,
        limit: int | None = None,
        before: str | None = None,
    ) -> tuple[list[LocalMessage], bool]:
        """Fetch a page of history; the server marks it read."""
        data = await self.api.get_messages(conversation_id, limit=limit, before=before)
        for raw in data["messages"]:
            self._ingest(raw)
        self.unread_counts[conversation_id] = 0
        return self._view(conversation_id).ordered(), bool(data.get("hasMore"))

    async def join_conversation(self, conversation_id: int) -> None:
        self.active_conversation = conversation_id
        self._joined.add(conversation_id)
        self.unread_counts[conversation_id] = 0
        await self._send_event("join:conversation", {"conversationId": conversation_id})

    async def leave_conversation(self, conversation_id: int) -> None:
        self._joined.discard(conversation_id)
        if self.active_conversation == conversation_id:
            self.active_conversation = None
        await self._send_event("leave:conversation", {"conversationId": conversation_id})

    async def mark_read(self, conversation_id: int, message_id: int) -> None:
        await self.api.mark_read(message_id)
        message = self._view(conversation_id).get(message_id)
        if message is not None:
            message.advance_status("read")
            message.read_by.add(self.user_id)
        unread = self.unread_counts.get(conversation_id, 0)
        if unread:
            self.unread_counts[conversation_id] = unread - 1

    async def delete_message(
        self, conversation_id: int, message_id: int, for_everyone: bool = False
    ) -> None:
        await self.api.delete_message(message_id, for_everyone=for_everyone)
        self._view(conversation_id).remove(message_id)

    def messages(self, conversation_id: int) -> list[LocalMessage]:
        view = self.views.get(conversation_id)
        return view.ordered() if view is not None else []

    def get_total_unread(self) -> int:
        return sum(self.unread_counts.values())

    def is_online(self, user_id: int) -> bool:
        return user_id in self.online_users
