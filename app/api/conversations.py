"""Conversation endpoints.

Every ``conversation_id`` accepts either a chat room id or the id of a call
session between the two participants.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_current_user, get_store
from app.config import get_settings
from app.core.rate_limit import limiter
from app.models import UserRef
from app.schemas import ConversationRead, CountResult, MessageCreate, MessageRead, OkResult
from app.services import chat
from app.services.store import MatchmakingStore

router = APIRouter(prefix="/conversations", tags=["conversations"])

settings = get_settings()


@router.get("", response_model=list[ConversationRead], response_model_by_alias=True)
def list_conversations(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[ConversationRead]:
    return chat.list_conversations(store, current_user.id)


@router.get(
    "/{conversation_id}/messages",
    response_model=list[MessageRead],
    response_model_by_alias=True,
)
def read_messages(
    conversation_id: str,
    limit: int = Query(default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit),
    offset: int = Query(default=0, ge=0),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[MessageRead]:
    """Return a page of messages, oldest first."""

    messages = chat.get_messages(store, current_user.id, conversation_id, limit=limit, offset=offset)
    return [MessageRead.model_validate(message) for message in messages]


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageRead,
    response_model_by_alias=True,
    status_code=201,
)
@limiter.limit(settings.rate_limit_messages)
async def send_message(
    request: Request,
    conversation_id: str,
    payload: MessageCreate,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> MessageRead:
    message = await chat.send_message(store, current_user.id, conversation_id, payload)
    return MessageRead.model_validate(message)


@router.post("/{conversation_id}/read", response_model=CountResult)
def mark_conversation_read(
    conversation_id: str,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> CountResult:
    return CountResult(count=chat.mark_conversation_read(store, current_user.id, conversation_id))


@router.delete("/{conversation_id}/messages", response_model=CountResult)
def clear_messages(
    conversation_id: str,
    all: bool = Query(default=False),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> CountResult:
    """Soft-delete the caller's messages, or the whole history with ``all=true``."""

    return CountResult(count=chat.clear_conversation(store, current_user.id, conversation_id, all=all))


@router.delete("/{conversation_id}/messages/{message_id}", response_model=OkResult)
def delete_message(
    conversation_id: str,
    message_id: int,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> OkResult:
    chat.delete_message(store, current_user.id, conversation_id, message_id)
    return OkResult()


@router.post(
    "/{conversation_id}/messages/{message_id}/read",
    response_model=MessageRead,
    response_model_by_alias=True,
)
def mark_message_read(
    conversation_id: str,
    message_id: int,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> MessageRead:
    message = chat.mark_message_read(store, current_user.id, conversation_id, message_id)
    return MessageRead.model_validate(message)
