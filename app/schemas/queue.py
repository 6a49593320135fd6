"""Schemas for the waiting queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator, model_validator

from bella.matching.preferences import normalize_gender_preference, normalize_interests

from app.models.enums import GenderPreference
from app.schemas.common import CamelModel


class AgeRange(CamelModel):
    min: int = Field(default=18, ge=18, le=100)
    max: int = Field(default=100, ge=18, le=100)

    @model_validator(mode="after")
    def check_bounds(self) -> "AgeRange":
        if self.min > self.max:
            raise ValueError("ageRange.min must not exceed ageRange.max")
        return self


class QueuePreferences(CamelModel):
    """Filters a waiter applies to potential partners."""

    age_range: AgeRange = Field(default_factory=AgeRange)
    gender_preference: GenderPreference = GenderPreference.ANY
    max_distance_km: int = Field(default=50, ge=1, le=100)
    interests: list[str] = Field(default_factory=list)
    location: str | None = Field(default=None, max_length=255)

    @field_validator("gender_preference", mode="before")
    @classmethod
    def normalize_gender(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_gender_preference(value)
        return value

    @field_validator("interests", mode="before")
    @classmethod
    def normalize_interest_set(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (list, tuple, set)):
            return normalize_interests(value)
        return value

    @field_validator("location")
    @classmethod
    def blank_location(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class JoinQueueRequest(CamelModel):
    preferences: QueuePreferences = Field(default_factory=QueuePreferences)


class QueueStatusRead(CamelModel):
    state: str
    position: int | None = None
    total_in_queue: int = 0
    estimated_wait_time: int | None = None
    attempts: int = 0
    enqueued_at: datetime | None = None
    preferences: QueuePreferences | None = None


class QueueStatistics(CamelModel):
    waiting: int
    matched: int
    left: int
    average_wait_seconds: int | None = None
