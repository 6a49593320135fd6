"""Call session endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query

from app.api.deps import get_current_user, get_store
from app.models import UserRef
from app.schemas import CallResponseRequest, EndSessionRequest, OkResult, SessionRead, StartSessionRequest
from app.services import sessions as session_service
from app.services.store import MatchmakingStore

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=SessionRead, response_model_by_alias=True)
async def start_session(
    payload: StartSessionRequest,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> SessionRead:
    """Ring another user from an existing conversation."""

    session = await session_service.start_direct_call(
        store, current_user.id, payload.other_user_id, payload.kind
    )
    return SessionRead.model_validate(session)


@router.get("/active", response_model=list[SessionRead], response_model_by_alias=True)
def list_active_sessions(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[SessionRead]:
    return [
        SessionRead.model_validate(session)
        for session in session_service.active_sessions(store, current_user.id)
    ]


@router.get("/history", response_model=list[SessionRead], response_model_by_alias=True)
def list_session_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[SessionRead]:
    return [
        SessionRead.model_validate(session)
        for session in session_service.session_history(store, current_user.id, limit=limit, offset=offset)
    ]


@router.get("/{session_id}", response_model=SessionRead, response_model_by_alias=True)
def read_session(
    session_id: str,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> SessionRead:
    return SessionRead.model_validate(session_service.get_session(store, session_id, current_user.id))


@router.post("/{session_id}/respond", response_model=SessionRead, response_model_by_alias=True)
async def respond_to_call(
    session_id: str,
    payload: CallResponseRequest,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> SessionRead:
    session = await session_service.call_response(store, session_id, current_user.id, payload.response)
    return SessionRead.model_validate(session)


@router.post("/{session_id}/end", response_model=OkResult)
async def end_session(
    session_id: str,
    payload: EndSessionRequest = Body(default_factory=EndSessionRequest),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> OkResult:
    await session_service.end_session(
        store, session_id, current_user.id, auto_requeue=payload.auto_requeue
    )
    return OkResult()


@router.post("/{session_id}/skip", response_model=OkResult)
async def skip_session(
    session_id: str,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> OkResult:
    await session_service.skip_session(store, session_id, current_user.id)
    return OkResult()
