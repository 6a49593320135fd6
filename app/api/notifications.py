"""Stored notification endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user, get_store
from app.config import get_settings
from app.models import UserRef
from app.schemas import CountResult, NotificationRead
from app.services.store import MatchmakingStore

router = APIRouter(prefix="/notifications", tags=["notifications"])

settings = get_settings()


@router.get("", response_model=list[NotificationRead], response_model_by_alias=True)
def list_notifications(
    limit: int = Query(default=20, ge=1, le=settings.notifications_max_limit),
    offset: int = Query(default=0, ge=0),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[NotificationRead]:
    """Newest notifications first."""

    notifications = store.list_notifications(current_user.id, limit=limit, offset=offset)
    return [NotificationRead.model_validate(item) for item in notifications]


@router.get("/unread", response_model=list[NotificationRead], response_model_by_alias=True)
def list_unread_notifications(
    limit: int = Query(default=settings.notifications_max_limit, ge=1, le=settings.notifications_max_limit),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[NotificationRead]:
    notifications = store.list_notifications(current_user.id, limit=limit, unread_only=True)
    return [NotificationRead.model_validate(item) for item in notifications]


@router.post("/read-all", response_model=CountResult)
def mark_all_notifications_read(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> CountResult:
    with store.transaction():
        count = store.mark_all_notifications_read(current_user.id)
    return CountResult(count=count)


@router.post(
    "/{notification_id}/read",
    response_model=NotificationRead,
    response_model_by_alias=True,
)
def mark_notification_read(
    notification_id: str,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> NotificationRead:
    with store.transaction():
        notification = store.mark_notification_read(notification_id, current_user.id)
    return NotificationRead.model_validate(notification)


@router.delete("", response_model=CountResult)
def delete_all_notifications(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> CountResult:
    with store.transaction():
        count = store.delete_all_notifications_for(current_user.id)
    return CountResult(count=count)
