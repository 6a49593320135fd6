from __future__ import annotations

from enum import Enum


class Gender(str, Enum):
    """Gender carried on the user reference."""

    MAN = "MAN"
    WOMAN = "WOMAN"
    NONBINARY = "NONBINARY"


class GenderPreference(str, Enum):
    """Who a waiter wants to be paired with."""

    MAN = "MAN"
    WOMAN = "WOMAN"
    NONBINARY = "NONBINARY"
    ANY = "ANY"


class QueueStatus(str, Enum):
    WAITING = "WAITING"
    MATCHED = "MATCHED"
    LEFT = "LEFT"


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class MatchSource(str, Enum):
    QUEUE = "QUEUE"
    SUGGESTION = "SUGGESTION"


class SessionKind(str, Enum):
    VIDEO = "VIDEO"
    VOICE = "VOICE"


class SessionState(str, Enum):
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"
    LIVE = "LIVE"
    ENDED = "ENDED"
    SKIPPED = "SKIPPED"


ACTIVE_SESSION_STATES = frozenset({SessionState.ACCEPTED, SessionState.LIVE})
OPEN_SESSION_STATES = frozenset({SessionState.PROPOSED, SessionState.ACCEPTED, SessionState.LIVE})
TERMINAL_SESSION_STATES = frozenset({SessionState.ENDED, SessionState.SKIPPED})


class EndReason(str, Enum):
    """Why a session reached a terminal state."""

    ENDED = "ended"
    SKIPPED = "skipped"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    NEGOTIATION_TIMEOUT = "negotiation_timeout"
    UNMATCHED = "unmatched"


class CallResponse(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    IGNORE = "ignore"


class MessageType(str, Enum):
    TEXT = "TEXT"
    VOICE = "VOICE"


class NotificationType(str, Enum):
    NEW_MATCH = "NEW_MATCH"
    CALL_REQUEST = "CALL_REQUEST"
    CALL_ACCEPTED = "CALL_ACCEPTED"
    CALL_DECLINED = "CALL_DECLINED"
    CALL_ENDED = "CALL_ENDED"


class ActivityKind(str, Enum):
    MATCH_ACCEPTED = "MATCH_ACCEPTED"
    MATCH_DECLINED = "MATCH_DECLINED"
    CALL_STARTED = "CALL_STARTED"
    CALL_ENDED = "CALL_ENDED"
    CALL_SKIPPED = "CALL_SKIPPED"
    UNMATCH = "UNMATCH"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


class ReportReason(str, Enum):
    HARASSMENT = "HARASSMENT"
    INAPPROPRIATE_CONTENT = "INAPPROPRIATE_CONTENT"
    SPAM = "SPAM"
    FAKE_PROFILE = "FAKE_PROFILE"
    UNDERAGE = "UNDERAGE"
    OTHER = "OTHER"


class ReportStatus(str, Enum):
    OPEN = "OPEN"
    REVIEWED = "REVIEWED"
    DISMISSED = "DISMISSED"
