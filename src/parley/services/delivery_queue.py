"""Offline delivery queue.

Messages addressed to a recipient with no live connection are remembered here
and pushed once the recipient is back, either in bulk when they reconnect or
by the periodic sweep. The message table stays the source of truth: queue
state is process-local and only carries retry bookkeeping.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from parley.db.time import as_utc, isoformat, utcnow
from parley.models import Message
from parley.models.message import MESSAGE_STATUS_SENT
from parley.schemas.message import serialize_message
from parley.services.message_store import MessageStore

if TYPE_CHECKING:
    from parley.realtime.hub import TransportHub

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], AbstractContextManager[MessageStore]]


@dataclass(eq=False)
class QueueEntry:
    """Bookkeeping for one undelivered message."""

    message_id: int
    conversation_id: int
    sender_id: int
    sent_at: datetime | None
    retries: int = 0
    queued_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "messageId": self.message_id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "sentAt": isoformat(self.sent_at),
            "retries": self.retries,
            "queuedAt": isoformat(self.queued_at),
        }


class DeliveryQueue:
    """Retains messages for offline recipients and retries delivery."""

    def __init__(
        self,
        hub: TransportHub,
        store_factory: StoreFactory,
        retry_interval: float = 30.0,
        max_retries: int = 10,
        pending_limit: int = 100,
    ) -> None:
        self.hub = hub
        self._store_factory = store_factory
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self.pending_limit = pending_limit
        self._queue: dict[int, list[QueueEntry]] = {}
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self.delivered_count = 0
        self.dropped_count = 0

    # Enqueue

    def queue_message(self, message: Message) -> QueueEntry | None:
        """Remember a message for its offline recipient."""
        if message.recipient_id is None:
            return None
        entries = self._queue.setdefault(message.recipient_id, [])
        for entry in entries:
            if entry.message_id == message.id:
                return entry
        entry = QueueEntry(
            message_id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            sent_at=message.sent_at,
        )
        entries.append(entry)
        logger.debug("Queued message %s for offline user %s", message.id, message.recipient_id)
        return entry

    # Background sweep

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the periodic retry sweep."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the sweep and wait for it to finish."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.01, float(self.retry_interval))
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                continue
            except TimeoutError:
                pass
            try:
                await self.process_queue()
            except SQLAlchemyError as exc:
                logger.warning("Delivery sweep hit a storage error: %s", exc)
            except Exception:
                logger.exception("Delivery sweep failed; retrying in %.2fs", interval)

    async def process_queue(self) -> None:
        """Run one retry sweep over every queued recipient."""
        for user_id in list(self._queue):
            snapshot = list(self._queue.get(user_id, []))
            online = self.hub.is_online(user_id)
            remaining: list[QueueEntry] = []

            for entry in snapshot:
                outcome: bool | None = False
                if online:
                    try:
                        outcome = await self._deliver_entry(user_id, entry)
                    except SQLAlchemyError as exc:
                        logger.warning(
                            "Storage error delivering message %s: %s", entry.message_id, exc
                        )
                        outcome = False
                    except Exception:
                        logger.exception("Failed to push queued message %s", entry.message_id)
                        outcome = False
                if outcome is None:
                    # Already delivered elsewhere, deleted or expired.
                    continue
                if outcome:
                    self.delivered_count += 1
                    continue
                entry.retries += 1
                if entry.retries >= self.max_retries:
                    self.dropped_count += 1
                    logger.warning(
                        "Dropping message %s for user %s after %d retries",
                        entry.message_id,
                        user_id,
                        entry.retries,
                    )
                    continue
                remaining.append(entry)

            # The reconnect flush may have discarded entries, or new ones may have
            # been queued, while this sweep was awaiting.
            current = self._queue.get(user_id, [])
            still_queued = {id(entry) for entry in current}
            seen = {id(entry) for entry in snapshot}
            remaining = [entry for entry in remaining if id(entry) in still_queued]
            remaining.extend(entry for entry in current if id(entry) not in seen)
            if remaining:
                self._queue[user_id] = remaining
            else:
                self._queue.pop(user_id, None)

    async def _deliver_entry(self, user_id: int, entry: QueueEntry) -> bool | None:
        """Push one queued message; None means the entry is obsolete."""
        with self._store_factory() as store:
            message = store.get_message(entry.message_id)
            if message is None or message.deleted or message.status != MESSAGE_STATUS_SENT:
                return None
            expires_at = as_utc(message.expires_at)
            if expires_at is not None and expires_at <= utcnow():
                return None

            pushed = await self.hub.send_to_user(
                user_id,
                "message:new",
                {"message": serialize_message(message), "offline": True},
            )
            if not pushed:
                return False

            if not store.mark_delivered(message, user_id):
                # The reconnect flush recorded it while the push was in flight.
                return None
            await self.hub.send_to_user(
                message.sender_id,
                "message:delivered",
                {
                    "messageId": message.id,
                    "conversationId": message.conversation_id,
                    "deliveredTo": user_id,
                    "deliveredAt": isoformat(utcnow()),
                },
            )
            return True

    # Reconnect path

    def get_pending_messages(self, user_id: int) -> list[dict[str, Any]]:
        """Return serialized undelivered messages for a user, oldest first."""
        with self._store_factory() as store:
            return [
                serialize_message(message)
                for message in store.get_pending_messages(user_id, self.pending_limit)
            ]

    async def deliver_pending_messages(self, user_id: int) -> int:
        """Flush stored undelivered messages to a user who just connected.

        Returns the number of messages promoted to delivered. Errors are logged
        and reported as zero deliveries.
        """
        try:
            with self._store_factory() as store:
                messages = store.get_pending_messages(user_id, self.pending_limit)
                if not messages:
                    return 0

                payload = [serialize_message(message) for message in messages]
                pushed = await self.hub.send_to_user(
                    user_id,
                    "messages:pending",
                    {"messages": payload, "count": len(payload)},
                )
                if not pushed:
                    return 0

                promoted = store.mark_many_delivered(messages, user_id)
                delivered_at = isoformat(utcnow())
                by_sender: dict[int, list[int]] = {}
                for message in promoted:
                    by_sender.setdefault(message.sender_id, []).append(message.id)
                for sender_id, message_ids in by_sender.items():
                    await self.hub.send_to_user(
                        sender_id,
                        "messages:delivered",
                        {
                            "messageIds": message_ids,
                            "deliveredTo": user_id,
                            "deliveredAt": delivered_at,
                        },
                    )
                self._discard(user_id, {message.id for message in messages})
        except SQLAlchemyError as exc:
            logger.error("Failed to deliver pending messages to user %s: %s", user_id, exc)
            return 0

        self.delivered_count += len(promoted)
        logger.info("Delivered %d pending messages to user %s", len(promoted), user_id)
        return len(promoted)

    def _discard(self, user_id: int, message_ids: set[int]) -> None:
        entries = [e for e in self._queue.get(user_id, []) if e.message_id not in message_ids]
        if entries:
            self._queue[user_id] = entries
        else:
            self._queue.pop(user_id, None)

    # Introspection

    def entries_for(self, user_id: int) -> list[QueueEntry]:
        return list(self._queue.get(user_id, []))

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "recipients": len(self._queue),
            "queuedMessages": sum(len(entries) for entries in self._queue.values()),
            "delivered": self.delivered_count,
            "dropped": self.dropped_count,
            "retryInterval": self.retry_interval,
            "maxRetries": self.max_retries,
        }

    def clear_for_user(self, user_id: int) -> int:
        return len(self._queue.pop(user_id, []))

    def clear_all(self) -> int:
        removed = sum(len(entries) for entries in self._queue.values())
        self._queue.clear()
        return removed
