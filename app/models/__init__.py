"""Database models package."""

from .base import Base
from .enums import (
    ACTIVE_SESSION_STATES,
    OPEN_SESSION_STATES,
    TERMINAL_SESSION_STATES,
    ActivityKind,
    CallResponse,
    ConnectionStatus,
    EndReason,
    Gender,
    GenderPreference,
    MatchSource,
    MatchStatus,
    MessageType,
    NotificationType,
    QueueStatus,
    ReportReason,
    ReportStatus,
    SessionKind,
    SessionState,
)
from .matchmaking import (
    ActivityEvent,
    CallSession,
    ChatMessage,
    ChatRoom,
    Connection,
    Match,
    Notification,
    QueueEntry,
    Report,
    SessionClaim,
    UserRef,
    canonical_pair,
    pair_key,
    room_id_for,
)

__all__ = [
    "Base",
    "UserRef",
    "QueueEntry",
    "Match",
    "CallSession",
    "SessionClaim",
    "ChatRoom",
    "ChatMessage",
    "Notification",
    "ActivityEvent",
    "Connection",
    "Report",
    "canonical_pair",
    "pair_key",
    "room_id_for",
    "ACTIVE_SESSION_STATES",
    "OPEN_SESSION_STATES",
    "TERMINAL_SESSION_STATES",
    "ActivityKind",
    "CallResponse",
    "ConnectionStatus",
    "EndReason",
    "Gender",
    "GenderPreference",
    "MatchSource",
    "MatchStatus",
    "MessageType",
    "NotificationType",
    "QueueStatus",
    "ReportReason",
    "ReportStatus",
    "SessionKind",
    "SessionState",
]
