"""Tests for the SQLAlchemy message store."""

from datetime import timedelta

import pytest

from parley.db.time import as_utc
from parley.models import Conversation, Message
from parley.services.message_store import MessageValidationError, SqlAlchemyMessageStore


def _send(store, conversation, sender, recipient, make_content, text="hi", **kwargs) -> Message:
    return store.create_message(
        conversation,
        sender_id=sender.id,
        recipient_id=recipient.id,
        content=make_content(text),
        **kwargs,
    )


def test_one_conversation_per_pair(store: SqlAlchemyMessageStore, test_user, other_user) -> None:
    first = store.find_or_create_conversation(test_user.id, other_user.id)
    second = store.find_or_create_conversation(other_user.id, test_user.id)

    assert first.id == second.id
    assert first.participants == tuple(sorted((test_user.id, other_user.id)))
    assert store.db.query(Conversation).count() == 1


def test_conversation_with_self_is_rejected(store: SqlAlchemyMessageStore, test_user) -> None:
    with pytest.raises(MessageValidationError):
        store.find_or_create_conversation(test_user.id, test_user.id)


def test_list_conversations_orders_by_activity(
    store: SqlAlchemyMessageStore, test_user, other_user, third_user, make_content
) -> None:
    quiet = store.find_or_create_conversation(test_user.id, third_user.id)
    busy = store.find_or_create_conversation(test_user.id, other_user.id)
    _send(store, busy, other_user, test_user, make_content)

    listed = store.list_conversations(test_user.id, limit=10)

    assert [c.id for c in listed] == [busy.id, quiet.id]
    assert store.list_conversations(other_user.id, limit=10) == [busy]
    assert [c.id for c in store.list_conversations(test_user.id, limit=1, skip=1)] == [quiet.id]


def test_create_message_stores_ciphertext_and_updates_pointer(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)

    assert message.id is not None
    assert message.status == "sent"
    assert message.ciphertext and message.iv and message.auth_tag
    assert conversation.last_message_id == message.id
    assert conversation.last_message_sender_id == test_user.id
    assert conversation.last_message_at is not None


@pytest.mark.parametrize("missing", ["encrypted", "iv"])
def test_create_message_requires_ciphertext_and_iv(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content, missing
) -> None:
    content = make_content("no iv")
    del content[missing]

    with pytest.raises(MessageValidationError, match="Message must be encrypted"):
        store.create_message(conversation, test_user.id, other_user.id, content)
    assert store.db.query(Message).count() == 0


def test_create_message_rejects_bad_base64(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    content = make_content()
    content["iv"] = "%%%"

    with pytest.raises(MessageValidationError):
        store.create_message(conversation, test_user.id, other_user.id, content)


def test_create_message_validates_type_and_reply(
    store: SqlAlchemyMessageStore,
    conversation,
    test_user,
    other_user,
    third_user,
    make_content,
) -> None:
    with pytest.raises(MessageValidationError):
        _send(store, conversation, test_user, other_user, make_content, message_type="sticker")

    elsewhere = store.find_or_create_conversation(test_user.id, third_user.id)
    foreign = _send(store, elsewhere, test_user, third_user, make_content)
    with pytest.raises(MessageValidationError):
        _send(store, conversation, test_user, other_user, make_content, reply_to_id=foreign.id)

    original = _send(store, conversation, test_user, other_user, make_content)
    reply = _send(store, conversation, other_user, test_user, make_content, reply_to_id=original.id)
    assert reply.reply_to_id == original.id


def test_attachments_need_their_own_iv(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    with pytest.raises(MessageValidationError):
        _send(
            store,
            conversation,
            test_user,
            other_user,
            make_content,
            message_type="image",
            attachments=[{"type": "image", "encryptedUrl": "blob://1"}],
        )

    message = _send(
        store,
        conversation,
        test_user,
        other_user,
        make_content,
        message_type="image",
        attachments=[{"type": "image", "encryptedUrl": "blob://1", "iv": "aXY="}],
    )
    assert message.attachments == [{"type": "image", "encryptedUrl": "blob://1", "iv": "aXY="}]


def test_receipts_are_idempotent(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)

    assert store.mark_delivered(message, other_user.id) is True
    assert store.mark_delivered(message, other_user.id) is False
    assert message.status == "delivered"
    assert [r.user_id for r in message.delivered_to] == [other_user.id]


def test_status_never_moves_backwards(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)

    assert store.mark_read(message, other_user.id) is True
    assert message.status == "read"
    # Read implies delivered.
    assert [r.user_id for r in message.delivered_to] == [other_user.id]

    assert store.mark_delivered(message, other_user.id) is False
    assert message.status == "read"
    assert store.mark_read(message, other_user.id) is False
    assert len(message.read_by) == 1


def test_mark_all_read_only_touches_recipient_messages(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    incoming = [_send(store, conversation, other_user, test_user, make_content) for _ in range(3)]
    outgoing = _send(store, conversation, test_user, other_user, make_content)

    assert store.mark_all_read(test_user.id, conversation.id) == 3
    assert all(m.status == "read" for m in incoming)
    assert outgoing.status == "sent"
    assert store.mark_all_read(test_user.id, conversation.id) == 0


def test_unread_count(
    store: SqlAlchemyMessageStore,
    conversation,
    test_user,
    other_user,
    third_user,
    make_content,
) -> None:
    _send(store, conversation, other_user, test_user, make_content)
    delivered = _send(store, conversation, other_user, test_user, make_content)
    read = _send(store, conversation, other_user, test_user, make_content)
    store.mark_delivered(delivered, test_user.id)
    store.mark_read(read, test_user.id)

    elsewhere = store.find_or_create_conversation(test_user.id, third_user.id)
    _send(store, elsewhere, third_user, test_user, make_content)

    assert store.get_unread_count(test_user.id, conversation.id) == 2
    assert store.get_unread_count(test_user.id) == 3
    assert store.get_unread_count(other_user.id) == 0


def test_soft_delete_for_everyone(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    kept = _send(store, conversation, test_user, other_user, make_content)
    gone = _send(store, conversation, test_user, other_user, make_content)

    store.soft_delete(gone)

    assert gone.deleted is True
    assert gone.deleted_at is not None
    # Rows are never hard-deleted.
    assert store.get_message(gone.id) is not None
    for user in (test_user, other_user):
        visible = store.get_conversation_messages(conversation.id, 50, requester=user.id)
        assert [m.id for m in visible] == [kept.id]


def test_soft_delete_for_me(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    message = _send(store, conversation, test_user, other_user, make_content)

    store.soft_delete(message, for_user_id=test_user.id)
    store.soft_delete(message, for_user_id=test_user.id)

    assert message.deleted is False
    assert message.deleted_for == {test_user.id}
    assert store.get_conversation_messages(conversation.id, 50, requester=test_user.id) == []
    assert [
        m.id for m in store.get_conversation_messages(conversation.id, 50, requester=other_user.id)
    ] == [message.id]


def test_expired_messages_are_hidden(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    ephemeral = _send(store, conversation, test_user, other_user, make_content, expires_in_ms=60_000)
    assert as_utc(ephemeral.expires_at) > as_utc(ephemeral.sent_at)

    ephemeral.expires_at = ephemeral.sent_at - timedelta(seconds=1)
    store.db.commit()

    assert store.get_conversation_messages(conversation.id, 50, requester=other_user.id) == []
    assert store.get_pending_messages(other_user.id, 10) == []
    assert store.get_unread_count(other_user.id) == 0


def test_non_positive_expiry_is_rejected(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    with pytest.raises(MessageValidationError):
        _send(store, conversation, test_user, other_user, make_content, expires_in_ms=0)


def test_conversation_messages_cursor(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    messages = [_send(store, conversation, test_user, other_user, make_content) for _ in range(4)]
    base = as_utc(messages[0].sent_at)
    for offset, message in enumerate(messages):
        message.sent_at = base + timedelta(seconds=offset)
    store.db.commit()

    newest_first = store.get_conversation_messages(conversation.id, 50)
    assert [m.id for m in newest_first] == [m.id for m in reversed(messages)]

    page = store.get_conversation_messages(conversation.id, 2, before=base + timedelta(seconds=3))
    assert [m.id for m in page] == [messages[2].id, messages[1].id]

    after = store.get_conversation_messages(conversation.id, 50, after=base + timedelta(seconds=1))
    assert [m.id for m in after] == [messages[3].id, messages[2].id]


def test_pending_messages_are_undelivered_oldest_first(
    store: SqlAlchemyMessageStore, conversation, test_user, other_user, make_content
) -> None:
    first = _send(store, conversation, test_user, other_user, make_content)
    delivered = _send(store, conversation, test_user, other_user, make_content)
    third = _send(store, conversation, test_user, other_user, make_content)
    deleted = _send(store, conversation, test_user, other_user, make_content)
    store.mark_delivered(delivered, other_user.id)
    store.soft_delete(deleted)

    pending = store.get_pending_messages(other_user.id, 10)
    assert [m.id for m in pending] == [first.id, third.id]
    assert [m.id for m in store.get_pending_messages(other_user.id, 1)] == [first.id]

    promoted = store.mark_many_delivered(pending + [delivered], other_user.id)
    assert [m.id for m in promoted] == [first.id, third.id]
    assert store.get_pending_messages(other_user.id, 10) == []


def test_public_keys(store: SqlAlchemyMessageStore, test_user) -> None:
    assert store.get_public_key(test_user.id) is None
    store.set_public_key(test_user.id, "cHVibGlj")
    assert store.get_public_key(test_user.id) == "cHVibGlj"
    assert store.set_public_key(999_999, "cHVibGlj") is None
