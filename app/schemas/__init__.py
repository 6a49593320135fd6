"""Pydantic schemas for API payloads."""

from .common import CamelModel, CountResult, OkResult
from .matches import AcceptMatchResult, MatchRead, SuggestionRequest
from .messages import ConversationRead, MessageCreate, MessageRead
from .notifications import NotificationRead
from .queue import AgeRange, JoinQueueRequest, QueuePreferences, QueueStatistics, QueueStatusRead
from .sessions import (
    CallResponseRequest,
    EndSessionRequest,
    SessionRead,
    StartSessionRequest,
    normalize_session_kind,
)
from .social import ActivityRead, ConnectionRead, ReportCreate, ReportRead, UnmatchRequest

__all__ = [
    "AcceptMatchResult",
    "ActivityRead",
    "AgeRange",
    "CallResponseRequest",
    "CamelModel",
    "ConnectionRead",
    "ConversationRead",
    "CountResult",
    "EndSessionRequest",
    "JoinQueueRequest",
    "MatchRead",
    "MessageCreate",
    "MessageRead",
    "NotificationRead",
    "OkResult",
    "QueuePreferences",
    "QueueStatistics",
    "QueueStatusRead",
    "ReportCreate",
    "ReportRead",
    "SessionRead",
    "StartSessionRequest",
    "SuggestionRequest",
    "UnmatchRequest",
    "normalize_session_kind",
]
