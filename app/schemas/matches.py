"""Schemas for match proposals."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.models.enums import MatchSource, MatchStatus
from app.schemas.common import CamelModel
from app.schemas.sessions import SessionRead


class MatchRead(CamelModel):
    id: str
    user1_id: str
    user2_id: str
    partner_id: str | None = None
    total_score: float
    status: MatchStatus
    source: MatchSource
    created_at: datetime
    expires_at: datetime | None = None
    responded_at: datetime | None = None
    accepted_by_me: bool = False
    accepted_by_partner: bool = False


class AcceptMatchResult(CamelModel):
    match_id: str
    status: MatchStatus
    session: SessionRead | None = None
    chat_room_id: str | None = None


class SuggestionRequest(CamelModel):
    other_user_id: str = Field(min_length=1, max_length=64)
