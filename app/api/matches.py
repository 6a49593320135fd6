"""Match proposal endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user, get_store
from app.config import get_settings
from app.models import Match, UserRef
from app.schemas import AcceptMatchResult, MatchRead, OkResult, SessionRead, SuggestionRequest
from app.services import sessions as session_service
from app.services.sessions import MatchDecision
from app.services.store import MatchmakingStore

router = APIRouter(prefix="/matches", tags=["matches"])

settings = get_settings()


def serialize_match(match: Match, user_id: str) -> MatchRead:
    partner_id = match.other(user_id)
    return MatchRead(
        id=match.id,
        user1_id=match.user1_id,
        user2_id=match.user2_id,
        partner_id=partner_id,
        total_score=match.total_score,
        status=match.status,
        source=match.source,
        created_at=match.created_at,
        expires_at=match.expires_at,
        responded_at=match.responded_at,
        accepted_by_me=match.accepted_by(user_id),
        accepted_by_partner=match.accepted_by(partner_id),
    )


def _decision_result(decision: MatchDecision) -> AcceptMatchResult:
    return AcceptMatchResult(
        match_id=decision.match.id,
        status=decision.match.status,
        session=SessionRead.model_validate(decision.session) if decision.session is not None else None,
        chat_room_id=decision.room_id,
    )


@router.get("/pending", response_model=list[MatchRead], response_model_by_alias=True)
def list_pending_matches(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[MatchRead]:
    return [serialize_match(match, current_user.id) for match in store.pending_matches_for(current_user.id)]


@router.get("/history", response_model=list[MatchRead], response_model_by_alias=True)
def list_match_history(
    limit: int = Query(default=20, ge=1),
    offset: int = Query(default=0, ge=0),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[MatchRead]:
    limit = min(limit, settings.match_history_limit)
    return [
        serialize_match(match, current_user.id)
        for match in store.match_history(current_user.id, limit=limit, offset=offset)
    ]


@router.post("/suggestion", response_model=AcceptMatchResult, response_model_by_alias=True)
async def create_match_from_suggestion(
    payload: SuggestionRequest,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> AcceptMatchResult:
    decision = await session_service.create_match_from_suggestion(
        store, current_user.id, payload.other_user_id
    )
    return _decision_result(decision)


@router.post("/{match_id}/accept", response_model=AcceptMatchResult, response_model_by_alias=True)
async def accept_match(
    match_id: str,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> AcceptMatchResult:
    decision = await session_service.accept_match(store, match_id, current_user.id)
    return _decision_result(decision)


@router.post("/{match_id}/decline", response_model=OkResult)
async def decline_match(
    match_id: str,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> OkResult:
    await session_service.decline_match(store, match_id, current_user.id)
    return OkResult()
