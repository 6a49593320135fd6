"""Schemas for call sessions."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from app.models.enums import CallResponse, SessionKind, SessionState
from app.schemas.common import CamelModel


def normalize_session_kind(value: Any) -> SessionKind:
    """VIDEO when asked for video, VOICE for anything else."""

    if isinstance(value, SessionKind):
        return value
    if isinstance(value, str) and value.strip().upper() == SessionKind.VIDEO.value:
        return SessionKind.VIDEO
    return SessionKind.VOICE


class SessionRead(CamelModel):
    id: str
    match_id: str | None = None
    user1_id: str
    user2_id: str
    initiator_id: str | None = None
    kind: SessionKind
    room_id: str
    state: SessionState
    created_at: datetime
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    ended_by: str | None = None
    end_reason: str | None = None
    duration_seconds: int | None = None


class StartSessionRequest(CamelModel):
    other_user_id: str = Field(min_length=1, max_length=64)
    kind: SessionKind = SessionKind.VOICE

    @field_validator("kind", mode="before")
    @classmethod
    def coerce_kind(cls, value: Any) -> SessionKind:
        return normalize_session_kind(value)


class EndSessionRequest(CamelModel):
    auto_requeue: bool = False


class CallResponseRequest(CamelModel):
    response: CallResponse

    @field_validator("response", mode="before")
    @classmethod
    def lower_response(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value
