"""Activity log endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user, get_store
from app.config import get_settings
from app.models import UserRef
from app.schemas import ActivityRead, CountResult
from app.services.store import MatchmakingStore

router = APIRouter(prefix="/activity", tags=["activity"])

settings = get_settings()


@router.get("", response_model=list[ActivityRead], response_model_by_alias=True)
def list_activity(
    limit: int = Query(default=20, ge=1, le=settings.activity_max_limit),
    offset: int = Query(default=0, ge=0),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[ActivityRead]:
    events = store.list_activity(current_user.id, limit=limit, offset=offset)
    return [ActivityRead.model_validate(event) for event in events]


@router.delete("", response_model=CountResult)
def clear_activity(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> CountResult:
    with store.transaction():
        count = store.clear_activity(current_user.id)
    return CountResult(count=count)
