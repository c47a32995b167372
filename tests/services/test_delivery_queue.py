"""Tests for the offline delivery queue."""

from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from parley.models import User
from parley.realtime.hub import Connection, TransportHub
from parley.services.delivery_queue import DeliveryQueue


class FrameRecorder:
    """Collects frames sent to a fake connection."""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []

    async def __call__(self, frame: dict[str, Any]) -> None:
        self.frames.append(frame)

    def events(self, name: str) -> list[Any]:
        return [frame["data"] for frame in self.frames if frame["event"] == name]


async def _connect(hub: TransportHub, user_id: int) -> FrameRecorder:
    recorder = FrameRecorder()
    await hub.connect(Connection(user_id, recorder))
    return recorder


@pytest.fixture()
def hub(store_factory) -> TransportHub:
    return TransportHub(store_factory=store_factory, offline_grace_seconds=0.01)


@pytest.fixture()
def queue(hub: TransportHub, store_factory) -> DeliveryQueue:
    return DeliveryQueue(hub, store_factory, retry_interval=0.05, max_retries=3)


def _send(store, conversation, sender, recipient, make_content):
    return store.create_message(conversation, sender.id, recipient.id, make_content("queued"))


def test_queue_message_is_deduplicated(
    queue: DeliveryQueue, store, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)

    first = queue.queue_message(message)
    second = queue.queue_message(message)

    assert first is second
    assert len(queue.entries_for(other_user.id)) == 1
    assert queue.get_status()["queuedMessages"] == 1


@pytest.mark.asyncio
async def test_reconnect_flushes_pending_with_one_sender_notice(
    hub: TransportHub,
    queue: DeliveryQueue,
    store,
    conversation,
    test_user,
    other_user,
    make_content,
) -> None:
    """Pending messages arrive as one batch and the sender hears about them once."""
    messages = [_send(store, conversation, test_user, other_user, make_content) for _ in range(3)]
    for message in messages:
        queue.queue_message(message)

    sender_frames = await _connect(hub, test_user.id)
    recipient_frames = await _connect(hub, other_user.id)

    delivered = await queue.deliver_pending_messages(other_user.id)

    assert delivered == 3
    batches = recipient_frames.events("messages:pending")
    assert len(batches) == 1
    assert batches[0]["count"] == 3
    assert [m["id"] for m in batches[0]["messages"]] == [m.id for m in messages]

    notices = sender_frames.events("messages:delivered")
    assert len(notices) == 1
    assert notices[0]["messageIds"] == [m.id for m in messages]
    assert notices[0]["deliveredTo"] == other_user.id

    assert all(m.status == "delivered" for m in messages)
    assert queue.entries_for(other_user.id) == []
    assert store.get_pending_messages(other_user.id, 10) == []

    # Nothing left to flush on the next connection.
    assert await queue.deliver_pending_messages(other_user.id) == 0
    assert len(recipient_frames.events("messages:pending")) == 1


@pytest.mark.asyncio
async def test_flush_without_live_connection_keeps_messages_pending(
    queue: DeliveryQueue, store, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)

    assert await queue.deliver_pending_messages(other_user.id) == 0
    assert message.status == "sent"


@pytest.mark.asyncio
async def test_flush_reports_storage_errors_as_zero(
    hub: TransportHub, store_factory, mocker, other_user
) -> None:
    queue = DeliveryQueue(hub, store_factory)
    await _connect(hub, other_user.id)
    mocker.patch(
        "parley.services.message_store.SqlAlchemyMessageStore.get_pending_messages",
        side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
    )

    assert await queue.deliver_pending_messages(other_user.id) == 0


@pytest.mark.asyncio
async def test_sweep_delivers_once_recipient_is_online(
    hub: TransportHub,
    queue: DeliveryQueue,
    store,
    conversation,
    test_user,
    other_user,
    make_content,
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)
    queue.queue_message(message)

    await queue.process_queue()
    assert queue.entries_for(other_user.id)[0].retries == 1

    sender_frames = await _connect(hub, test_user.id)
    recipient_frames = await _connect(hub, other_user.id)
    await queue.process_queue()

    pushed = recipient_frames.events("message:new")
    assert len(pushed) == 1
    assert pushed[0]["offline"] is True
    assert pushed[0]["message"]["id"] == message.id
    assert [d["messageId"] for d in sender_frames.events("message:delivered")] == [message.id]
    assert message.status == "delivered"
    assert queue.entries_for(other_user.id) == []
    assert queue.delivered_count == 1


@pytest.mark.asyncio
async def test_sweep_drops_after_max_retries(
    queue: DeliveryQueue, store, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)
    queue.queue_message(message)

    for _ in range(queue.max_retries):
        await queue.process_queue()

    assert queue.entries_for(other_user.id) == []
    assert queue.dropped_count == 1
    # The stored message is still there for the next reconnect flush.
    assert message.status == "sent"


@pytest.mark.asyncio
async def test_sweep_discards_obsolete_entries(
    hub: TransportHub,
    queue: DeliveryQueue,
    store,
    conversation,
    test_user,
    other_user,
    make_content,
) -> None:
    already_delivered = _send(store, conversation, test_user, other_user, make_content)
    deleted = _send(store, conversation, test_user, other_user, make_content)
    queue.queue_message(already_delivered)
    queue.queue_message(deleted)
    store.mark_delivered(already_delivered, other_user.id)
    store.soft_delete(deleted)

    recipient_frames = await _connect(hub, other_user.id)
    await queue.process_queue()

    assert queue.entries_for(other_user.id) == []
    assert recipient_frames.events("message:new") == []
    assert queue.delivered_count == 0
    assert queue.dropped_count == 0


@pytest.mark.asyncio
async def test_start_and_stop(queue: DeliveryQueue, wait_for, mocker) -> None:
    sweep = mocker.patch.object(queue, "process_queue", new=mocker.AsyncMock())

    await queue.start()
    assert queue.running
    await wait_for(lambda: sweep.await_count >= 1)

    await queue.stop()
    assert not queue.running
    assert queue.get_status()["running"] is False


def test_clear_helpers(
    queue: DeliveryQueue, store, conversation, test_user, other_user, make_content
) -> None:
    for _ in range(2):
        queue.queue_message(_send(store, conversation, test_user, other_user, make_content))

    assert queue.clear_for_user(other_user.id) == 2
    queue.queue_message(_send(store, conversation, test_user, other_user, make_content))
    assert queue.clear_all() == 1
    assert queue.get_status()["recipients"] == 0


def _seed_pair(file_store_factory, make_content):
    """Create two users and one undelivered message in the file database."""
    with file_store_factory() as store:
        sender = User(username="dana")
        recipient = User(username="eli")
        store.db.add_all([sender, recipient])
        store.db.commit()
        conversation = store.find_or_create_conversation(sender.id, recipient.id)
        message = store.create_message(
            conversation, sender.id, recipient.id, make_content("race")
        )
    return sender.id, recipient.id, message


@pytest.mark.asyncio
async def test_sweep_and_reconnect_flush_record_delivery_once(
    file_store_factory, make_content, caplog
) -> None:
    """A reconnect flush landing mid-sweep leaves one receipt and an empty queue."""
    sender_id, recipient_id, message = _seed_pair(file_store_factory, make_content)
    hub = TransportHub(store_factory=file_store_factory, offline_grace_seconds=0.01)
    queue = DeliveryQueue(hub, file_store_factory, retry_interval=0.05, max_retries=3)
    queue.queue_message(message)

    class ReconnectingRecipient(FrameRecorder):
        async def __call__(self, frame: dict[str, Any]) -> None:
            await super().__call__(frame)
            if frame["event"] == "message:new":
                await queue.deliver_pending_messages(recipient_id)

    sender_frames = await _connect(hub, sender_id)
    recipient_frames = ReconnectingRecipient()
    await hub.connect(Connection(recipient_id, recipient_frames))

    await queue.process_queue()

    assert [f["event"] for f in recipient_frames.frames] == ["message:new", "messages:pending"]
    assert len(sender_frames.events("messages:delivered")) == 1
    assert sender_frames.events("message:delivered") == []
    assert queue.entries_for(recipient_id) == []
    assert queue.delivered_count == 1
    assert "Storage error" not in caplog.text

    with file_store_factory() as store:
        stored = store.get_message(message.id)
        assert stored.status == "delivered"
        assert len(stored.delivered_to) == 1


def test_mark_delivered_with_stale_message_is_a_no_op(file_store_factory, make_content) -> None:
    _, recipient_id, message = _seed_pair(file_store_factory, make_content)

    with file_store_factory() as stale, file_store_factory() as fresh:
        stale_copy = stale.get_message(message.id)
        assert fresh.mark_delivered(fresh.get_message(message.id), recipient_id) is True

        assert stale.mark_delivered(stale_copy, recipient_id) is False
        assert stale_copy.status == "delivered"


@pytest.mark.asyncio
async def test_failing_push_keeps_sweep_running(
    hub: TransportHub,
    queue: DeliveryQueue,
    store,
    conversation,
    test_user,
    other_user,
    make_content,
    wait_for,
) -> None:
    async def broken_sender(frame: dict[str, Any]) -> None:
        raise ValueError("frame could not be serialized")

    await hub.connect(Connection(other_user.id, broken_sender))
    queue.queue_message(_send(store, conversation, test_user, other_user, make_content))

    await queue.start()
    try:
        await wait_for(lambda: queue.dropped_count == 1)
        assert queue.running
    finally:
        await queue.stop()
    assert queue.entries_for(other_user.id) == []


@pytest.mark.asyncio
async def test_sweep_loop_survives_unexpected_errors(
    queue: DeliveryQueue, wait_for, mocker
) -> None:
    sweep = mocker.patch.object(
        queue, "process_queue", new=mocker.AsyncMock(side_effect=RuntimeError("boom"))
    )

    await queue.start()
    try:
        await wait_for(lambda: sweep.await_count >= 2)
        assert queue.running
    finally:
        await queue.stop()
