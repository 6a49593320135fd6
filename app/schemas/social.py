"""Schemas for reports, connections and the activity log."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from app.models.enums import ActivityKind, ConnectionStatus, ReportReason, ReportStatus
from app.schemas.common import CamelModel


class ReportCreate(CamelModel):
    reported_user_id: str = Field(min_length=1, max_length=64)
    reason: ReportReason
    description: str = Field(max_length=2000)
    session_id: str | None = None

    @field_validator("reason", mode="before")
    @classmethod
    def upper_reason(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("description")
    @classmethod
    def check_description(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 10:
            raise ValueError("Description must be at least 10 characters")
        return value


class ReportRead(CamelModel):
    id: str
    reporter_id: str
    reported_user_id: str
    reason: ReportReason
    description: str
    session_id: str | None = None
    status: ReportStatus
    created_at: datetime


class ConnectionRead(CamelModel):
    id: str
    partner_id: str
    partner_name: str | None = None
    partner_profile_picture: str | None = None
    match_id: str | None = None
    room_id: str
    status: ConnectionStatus
    created_at: datetime


class UnmatchRequest(CamelModel):
    user_id: str = Field(min_length=1, max_length=64)
    clear_messages: bool = True


class ActivityRead(CamelModel):
    id: int
    kind: ActivityKind
    partner_id: str | None = None
    match_id: str | None = None
    session_id: str | None = None
    details: dict[str, Any]
    created_at: datetime
