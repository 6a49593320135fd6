"""Waiting queue endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from app.api.deps import get_current_user, get_store
from app.config import get_settings
from app.core.rate_limit import limiter
from app.models import UserRef
from app.schemas import JoinQueueRequest, OkResult, QueuePreferences, QueueStatistics, QueueStatusRead
from app.services.matcher import run_tick
from app.services.store import MatchmakingStore
from app.services.waiting_queue import WaitingQueue

router = APIRouter(prefix="/queue", tags=["queue"])

settings = get_settings()


@router.post("/join", response_model=QueueStatusRead, response_model_by_alias=True)
@limiter.limit(settings.rate_limit_queue)
async def join_queue(
    request: Request,
    payload: JoinQueueRequest,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> QueueStatusRead:
    queue = WaitingQueue(store)
    with store.transaction():
        queue.enqueue(current_user.id, payload.preferences)
    await run_tick(store.db)
    return queue.status(current_user.id)


@router.post("/leave", response_model=OkResult)
async def leave_queue(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> OkResult:
    with store.transaction():
        WaitingQueue(store).leave(current_user.id)
    return OkResult()


@router.get("/status", response_model=QueueStatusRead, response_model_by_alias=True)
def read_queue_status(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> QueueStatusRead:
    return WaitingQueue(store).status(current_user.id)


@router.post("/heartbeat", response_model=QueueStatusRead, response_model_by_alias=True)
def queue_heartbeat(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> QueueStatusRead:
    queue = WaitingQueue(store)
    with store.transaction():
        queue.heartbeat(current_user.id)
    return queue.status(current_user.id)


@router.put("/preferences", response_model=QueueStatusRead, response_model_by_alias=True)
async def update_queue_preferences(
    payload: QueuePreferences,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> QueueStatusRead:
    queue = WaitingQueue(store)
    with store.transaction():
        queue.update_preferences(current_user.id, payload)
    await run_tick(store.db)
    return queue.status(current_user.id)


@router.get("/statistics", response_model=QueueStatistics, response_model_by_alias=True)
def read_queue_statistics(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> QueueStatistics:
    return WaitingQueue(store).statistics()
