# src/parley/api/v1/endpoints/messages.py
"""Encrypted direct message endpoints for the Parley API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status

from parley.core.settings import settings
from parley.db.time import isoformat, to_utc, utcnow
from parley.models import Conversation, Message, User
from parley.realtime.hub import conversation_room, user_room
from parley.schemas.message import (
    DeleteMessageRequest,
    KeyExchangeRequest,
    MessageCreate,
    PublicKeyResponse,
    serialize_conversation,
    serialize_message,
)
from parley.services.crypto import CryptoService, KeyExchangeError
from parley.services.message_store import MessageStore, MessageValidationError

from ..dependencies import (
    CurrentUserDep,
    DeliveryQueueDep,
    HubDep,
    PushRelayDep,
    StoreDep,
)

router = APIRouter(prefix="/messages", tags=["messages"])


def _get_conversation_for(store: MessageStore, conversation_id: int, user: User) -> Conversation:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    if not store.is_participant(conversation, user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot access this conversation",
        )
    return conversation


def _get_message(store: MessageStore, message_id: int) -> Message:
    message = store.get_message(message_id)
    if message is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found",
        )
    return message


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    message_data: MessageCreate,
    current_user: CurrentUserDep,
    store: StoreDep,
    hub: HubDep,
    delivery_queue: DeliveryQueueDep,
    push_relay: PushRelayDep,
) -> dict[str, Any]:
    """Persist an encrypted message and deliver it or queue it for later."""
    content = message_data.content
    if content is None or not content.encrypted or not content.iv:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message must be encrypted",
        )
    if (message_data.conversation_id is None) == (message_data.recipient_id is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Exactly one of conversationId or recipientId is required",
        )

    if message_data.conversation_id is not None:
        conversation = _get_conversation_for(store, message_data.conversation_id, current_user)
        recipient_id = conversation.other_participant(current_user.id)
    else:
        recipient_id = message_data.recipient_id  # type: ignore[assignment]
        if store.get_user(recipient_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Recipient not found",
            )
        try:
            conversation = store.find_or_create_conversation(current_user.id, recipient_id)
        except MessageValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(exc),
            ) from exc

    if message_data.reply_to is not None:
        target = store.get_message(message_data.reply_to)
        if target is None or target.conversation_id != conversation.id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Reply target not found",
            )

    try:
        message = store.create_message(
            conversation,
            sender_id=current_user.id,
            recipient_id=recipient_id,
            content=content.model_dump(by_alias=True),
            message_type=message_data.type,
            attachments=(
                [a.model_dump(by_alias=True, exclude_none=True) for a in message_data.attachments]
                if message_data.attachments
                else None
            ),
            reply_to_id=message_data.reply_to,
            expires_in_ms=message_data.expires_in,
        )
    except MessageValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    payload = serialize_message(message)
    pushed = 0
    if hub.is_online(recipient_id):
        pushed = await hub.send_to_user(recipient_id, "message:new", {"message": payload})
    if not pushed:
        delivery_queue.queue_message(message)
        push_relay.schedule(message)

    return payload


@router.get("/conversations")
async def get_conversations(
    current_user: CurrentUserDep,
    store: StoreDep,
    hub: HubDep,
    limit: int = Query(settings.conversations_page_size, ge=1, le=100),
    skip: int = Query(0, ge=0),
) -> dict[str, Any]:
    """List the caller's conversations, most recently active first."""
    conversations = store.list_conversations(current_user.id, limit=limit, skip=skip)
    results = []
    for conversation in conversations:
        participants = []
        for participant_id in conversation.participants:
            participant = store.get_user(participant_id)
            participants.append(
                {
                    "id": participant_id,
                    "username": participant.username if participant is not None else None,
                    "online": hub.is_online(participant_id),
                }
            )
        last_message = (
            store.get_message(conversation.last_message_id)
            if conversation.last_message_id is not None
            else None
        )
        results.append(
            serialize_conversation(
                conversation,
                participants,
                last_message,
                store.get_unread_count(current_user.id, conversation.id),
            )
        )
    return {"conversations": results}


@router.get("/unread")
async def get_unread_count(
    current_user: CurrentUserDep,
    store: StoreDep,
    conversation_id: int | None = Query(None, alias="conversationId"),
) -> dict[str, int]:
    """Return the caller's unread count, optionally for one conversation."""
    if conversation_id is not None:
        _get_conversation_for(store, conversation_id, current_user)
    return {"unreadCount": store.get_unread_count(current_user.id, conversation_id)}


@router.get("/conversation/{conversation_id}")
async def get_messages(
    conversation_id: int,
    current_user: CurrentUserDep,
    store: StoreDep,
    hub: HubDep,
    limit: int = Query(settings.messages_page_size, ge=1, le=100),
    before: datetime | None = Query(None),
    after: datetime | None = Query(None),
) -> dict[str, Any]:
    """Return a page of messages in chronological order and mark them read."""
    conversation = _get_conversation_for(store, conversation_id, current_user)

    messages = store.get_conversation_messages(
        conversation.id,
        limit=limit + 1,
        before=to_utc(before) if before is not None else None,
        after=to_utc(after) if after is not None else None,
        requester=current_user.id,
    )
    has_more = len(messages) > limit
    messages = messages[:limit]
    serialized = [serialize_message(message) for message in reversed(messages)]

    if store.mark_all_read(current_user.id, conversation.id):
        other_id = conversation.other_participant(current_user.id)
        await hub.send_to_rooms(
            [conversation_room(conversation.id), user_room(other_id)],
            "messages:read",
            {
                "conversationId": conversation.id,
                "readBy": current_user.id,
                "readAt": isoformat(utcnow()),
            },
        )

    return {"messages": serialized, "hasMore": has_more}


@router.put("/{message_id}/read")
async def mark_message_read(
    message_id: int,
    current_user: CurrentUserDep,
    store: StoreDep,
    hub: HubDep,
) -> dict[str, Any]:
    """Mark a message as read by its recipient."""
    message = _get_message(store, message_id)
    if message.recipient_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the recipient can mark this message as read",
        )

    if store.mark_read(message, current_user.id):
        await hub.send_to_user(
            message.sender_id,
            "message:read",
            {
                "messageId": message.id,
                "conversationId": message.conversation_id,
                "readBy": current_user.id,
                "readAt": isoformat(utcnow()),
            },
        )

    return {"status": "marked_as_read", "messageId": message.id}


@router.delete("/{message_id}")
async def delete_message(
    message_id: int,
    current_user: CurrentUserDep,
    store: StoreDep,
    hub: HubDep,
    body: DeleteMessageRequest | None = None,
) -> dict[str, Any]:
    """Delete a message for the caller, or for everyone when the caller sent it."""
    for_everyone = body.for_everyone if body is not None else False
    message = _get_message(store, message_id)
    conversation = _get_conversation_for(store, message.conversation_id, current_user)

    if for_everyone and message.sender_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot delete this message for everyone",
        )

    store.soft_delete(message, None if for_everyone else current_user.id)

    if for_everyone:
        other_id = conversation.other_participant(current_user.id)
        await hub.send_to_rooms(
            [conversation_room(conversation.id), user_room(other_id)],
            "message:deleted",
            {
                "messageId": message.id,
                "conversationId": conversation.id,
                "deletedBy": current_user.id,
            },
        )

    return {"status": "deleted", "messageId": message.id, "forEveryone": for_everyone}


@router.post("/keys/exchange")
async def exchange_keys(
    request_data: KeyExchangeRequest,
    current_user: CurrentUserDep,
    store: StoreDep,
    hub: HubDep,
) -> dict[str, Any]:
    """Publish the caller's public key and relay it to an online peer."""
    try:
        CryptoService.load_public_key(request_data.public_key)
    except KeyExchangeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid public key",
        ) from exc

    if store.get_user(request_data.recipient_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Recipient not found",
        )

    store.set_public_key(current_user.id, request_data.public_key)

    relayed = 0
    if hub.is_online(request_data.recipient_id):
        relayed = await hub.send_to_user(
            request_data.recipient_id,
            "keys:received",
            {"senderId": current_user.id, "publicKey": request_data.public_key},
        )

    return {"status": "key_published", "relayed": bool(relayed)}


@router.get("/keys/{user_id}", response_model=PublicKeyResponse)
async def get_public_key(
    user_id: int,
    current_user: CurrentUserDep,
    store: StoreDep,
) -> PublicKeyResponse:
    """Return a user's current public key."""
    public_key = store.get_public_key(user_id)
    if not public_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Public key not found",
        )
    return PublicKeyResponse(user_id=user_id, public_key=public_key)
