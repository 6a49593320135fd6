"""Conversation messages: persistence plus live delivery over the conversation bus."""

from __future__ import annotations

import logging
from datetime import datetime

from bella.realtime import ConnectionHandle, get_conversation_bus, get_presence_registry
from bella.signaling import build_frame

from app.core.clock import utcnow
from app.core.errors import ForbiddenError, NotFoundError
from app.models import ChatMessage, ChatRoom
from app.schemas import ConversationRead, MessageCreate, MessageRead
from app.services.store import MatchmakingStore

logger = logging.getLogger(__name__)


def resolve_conversation(store: MatchmakingStore, conversation_id: str, user_id: str) -> str:
    """Map a chat room id or a session id onto the room id, checking participation."""

    room = store.get_chat_room(conversation_id)
    if room is not None:
        if not room.involves(user_id):
            raise ForbiddenError("Not a participant of this conversation")
        return room.room_id
    session = store.get_session(conversation_id)
    if session is None:
        raise NotFoundError("Conversation not found")
    if not session.involves(user_id):
        raise ForbiddenError("Not a participant of this conversation")
    return session.room_id


def _ensure_room(store: MatchmakingStore, conversation_id: str, user_id: str, now: datetime) -> ChatRoom:
    room_id = resolve_conversation(store, conversation_id, user_id)
    room = store.get_chat_room(room_id)
    if room is not None:
        return room
    session = store.get_session(conversation_id)
    assert session is not None
    return store.upsert_chat_room(session.user1_id, session.user2_id, now=now)


def message_payload(message: ChatMessage) -> dict:
    return MessageRead.model_validate(message).model_dump(mode="json", by_alias=True)


async def send_message(
    store: MatchmakingStore,
    user_id: str,
    conversation_id: str,
    payload: MessageCreate,
    *,
    sender: ConnectionHandle | None = None,
    now: datetime | None = None,
) -> ChatMessage:
    """Persist a message and push it to the conversation in arrival order."""

    now = now or utcnow()
    with store.transaction():
        room = _ensure_room(store, conversation_id, user_id, now)
        message = store.append_message(
            room.room_id,
            user_id,
            type=payload.type,
            content=payload.content,
            voice_url=payload.voice_url,
            duration=payload.duration,
            now=now,
        )
        recipient_id = room.other(user_id)
        if get_presence_registry().is_online(recipient_id):
            store.mark_delivered([message.id])

    data = message_payload(message)
    await get_conversation_bus().publish(message.room_id, "message", data, sender=sender)
    # recipients who have not joined the room still get the message on their socket
    await get_presence_registry().fanout_to_user(
        recipient_id,
        build_frame("message", {"conversationId": message.room_id, **data}),
        skip_conversation=message.room_id,
    )
    return message


def get_messages(
    store: MatchmakingStore, user_id: str, conversation_id: str, *, limit: int, offset: int = 0
) -> list[ChatMessage]:
    room_id = resolve_conversation(store, conversation_id, user_id)
    return store.get_messages_by_room(room_id, limit=limit, offset=offset)


def mark_conversation_read(
    store: MatchmakingStore, user_id: str, conversation_id: str, *, now: datetime | None = None
) -> int:
    room_id = resolve_conversation(store, conversation_id, user_id)
    with store.transaction():
        return store.mark_read(room_id, user_id, now=now)


def clear_conversation(
    store: MatchmakingStore,
    user_id: str,
    conversation_id: str,
    *,
    all: bool = False,
    now: datetime | None = None,
) -> int:
    room_id = resolve_conversation(store, conversation_id, user_id)
    with store.transaction():
        cleared = store.clear_messages(room_id, user_id, all=all, now=now)
    logger.info("User %s cleared %d messages in %s (all=%s)", user_id, cleared, room_id, all)
    return cleared


def _message_in_room(store: MatchmakingStore, room_id: str, message_id: int) -> ChatMessage:
    message = store.get_message(message_id)
    if message is None or message.room_id != room_id or message.is_deleted:
        raise NotFoundError("Message not found")
    return message


def delete_message(
    store: MatchmakingStore,
    user_id: str,
    conversation_id: str,
    message_id: int,
    *,
    now: datetime | None = None,
) -> ChatMessage:
    room_id = resolve_conversation(store, conversation_id, user_id)
    _message_in_room(store, room_id, message_id)
    with store.transaction():
        return store.delete_message(message_id, user_id, now=now)


def mark_message_read(
    store: MatchmakingStore,
    user_id: str,
    conversation_id: str,
    message_id: int,
    *,
    now: datetime | None = None,
) -> ChatMessage:
    room_id = resolve_conversation(store, conversation_id, user_id)
    _message_in_room(store, room_id, message_id)
    with store.transaction():
        return store.mark_message_read(message_id, user_id, now=now)


def list_conversations(store: MatchmakingStore, user_id: str) -> list[ConversationRead]:
    rooms = store.rooms_for_user(user_id)
    partners = store.get_users(room.other(user_id) for room in rooms)
    conversations: list[ConversationRead] = []
    for room in rooms:
        partner_id = room.other(user_id)
        partner = partners.get(partner_id)
        last = store.last_message(room.room_id)
        conversations.append(
            ConversationRead(
                room_id=room.room_id,
                partner_id=partner_id,
                partner_name=partner.name if partner is not None else None,
                partner_profile_picture=partner.profile_picture_url if partner is not None else None,
                created_at=room.created_at,
                last_activity=room.last_activity,
                unread_count=store.unread_count(room.room_id, user_id),
                last_message=MessageRead.model_validate(last) if last is not None else None,
            )
        )
    return conversations


__all__ = [
    "clear_conversation",
    "delete_message",
    "get_messages",
    "list_conversations",
    "mark_conversation_read",
    "mark_message_read",
    "message_payload",
    "resolve_conversation",
    "send_message",
]
