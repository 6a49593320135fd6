"""Schemas for stored notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from app.models.enums import NotificationType
from app.schemas.common import CamelModel


class NotificationRead(CamelModel):
    id: str
    type: NotificationType
    data: dict[str, Any]
    created_at: datetime
    read: bool
    read_at: datetime | None = None
