"""User report endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status

from app.api.deps import get_current_user, get_store
from app.config import get_settings
from app.core.errors import ValidationFailedError
from app.core.rate_limit import limiter
from app.models import UserRef
from app.schemas import ReportCreate, ReportRead
from app.services.store import MatchmakingStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])

settings = get_settings()


@router.post(
    "",
    response_model=ReportRead,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.rate_limit_reports)
def report_user(
    request: Request,
    payload: ReportCreate,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> ReportRead:
    if payload.reported_user_id == current_user.id:
        raise ValidationFailedError("Cannot report yourself")
    store.require_user(payload.reported_user_id)
    with store.transaction():
        report = store.create_report(
            current_user.id,
            payload.reported_user_id,
            payload.reason,
            payload.description,
            session_id=payload.session_id,
        )
    logger.info(
        "User %s reported %s (%s)", current_user.id, payload.reported_user_id, payload.reason.value
    )
    return ReportRead.model_validate(report)


@router.get("/mine", response_model=list[ReportRead], response_model_by_alias=True)
def list_my_reports(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[ReportRead]:
    return [ReportRead.model_validate(report) for report in store.reports_by(current_user.id)]
