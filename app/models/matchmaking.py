from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.models.base import Base
from app.models.enums import (
    ActivityKind,
    ConnectionStatus,
    Gender,
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

ROOM_NAMESPACE = uuid.UUID("5b0f6f0e-6a43-4c1e-9a55-5d1f0f4b7a21")


def _enum(enum_cls: type, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def _new_id() -> str:
    return str(uuid.uuid4())


def canonical_pair(first: str, second: str) -> tuple[str, str]:
    """Order two user ids so the smaller one comes first."""

    return (first, second) if first < second else (second, first)


def pair_key(first: str, second: str) -> str:
    low, high = canonical_pair(first, second)
    return f"{low}:{high}"


def room_id_for(first: str, second: str) -> str:
    """Deterministic conversation id for an unordered participant pair."""

    return str(uuid.uuid5(ROOM_NAMESPACE, pair_key(first, second)))


class UserRef(Base):
    """Read-only projection of the profile record owned by the identity service."""

    __tablename__ = "user_refs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(128))
    profile_picture_url: Mapped[str | None] = mapped_column(String(512))
    gender: Mapped[Gender | None] = mapped_column(_enum(Gender, "user_gender"))
    age: Mapped[int | None] = mapped_column(Integer)
    is_photo_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    interests: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    location: Mapped[str | None] = mapped_column(String(255))
    show_online_status: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def name(self) -> str:
        return self.display_name or self.id


class QueueEntry(Base):
    """A user's seat in the waiting queue; one row per user, status mutates in place."""

    __tablename__ = "queue_entries"
    __table_args__ = (Index("ix_queue_entries_status_enqueued", "status", "enqueued_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("user_refs.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    status: Mapped[QueueStatus] = mapped_column(_enum(QueueStatus, "queue_status"), nullable=False)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime)
    left_at: Mapped[datetime | None] = mapped_column(DateTime)
    left_reason: Mapped[str | None] = mapped_column(String(32))
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Match(Base):
    """A proposed pairing of two users."""

    __tablename__ = "matches"
    __table_args__ = (
        CheckConstraint("user1_id < user2_id", name="chk_match_canonical_pair"),
        # pending_key is set only while PENDING; NULLs never collide
        UniqueConstraint("pending_key", name="uq_matches_pending_pair"),
        Index("ix_matches_pair_status", "user1_id", "user2_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user1_id: Mapped[str] = mapped_column(ForeignKey("user_refs.id", ondelete="CASCADE"), nullable=False)
    user2_id: Mapped[str] = mapped_column(ForeignKey("user_refs.id", ondelete="CASCADE"), nullable=False)
    total_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[MatchStatus] = mapped_column(_enum(MatchStatus, "match_status"), nullable=False)
    source: Mapped[MatchSource] = mapped_column(
        _enum(MatchSource, "match_source"), default=MatchSource.QUEUE, nullable=False
    )
    pending_key: Mapped[str | None] = mapped_column(String(140))
    user1_accepted_at: Mapped[datetime | None] = mapped_column(DateTime)
    user2_accepted_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime)
    responded_by: Mapped[str | None] = mapped_column(String(64))

    def other(self, user_id: str) -> str:
        return self.user2_id if user_id == self.user1_id else self.user1_id

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def accepted_by(self, user_id: str) -> bool:
        if user_id == self.user1_id:
            return self.user1_accepted_at is not None
        if user_id == self.user2_id:
            return self.user2_accepted_at is not None
        return False


class ChatRoom(Base):
    """Durable conversation between two users, keyed by the participant pair."""

    __tablename__ = "chat_rooms"
    __table_args__ = (
        CheckConstraint("participant1_id < participant2_id", name="chk_chat_room_canonical_pair"),
        UniqueConstraint("participant1_id", "participant2_id", name="uq_chat_rooms_pair"),
    )

    room_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    participant1_id: Mapped[str] = mapped_column(String(64), nullable=False)
    participant2_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_activity: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def involves(self, user_id: str) -> bool:
        return user_id in (self.participant1_id, self.participant2_id)

    def other(self, user_id: str) -> str:
        return self.participant2_id if user_id == self.participant1_id else self.participant1_id


class CallSession(Base):
    """A 1:1 audio/video session and the owner of its signaling."""

    __tablename__ = "call_sessions"
    __table_args__ = (
        CheckConstraint("user1_id < user2_id", name="chk_session_canonical_pair"),
        Index("ix_call_sessions_state_created", "state", "created_at"),
        Index("ix_call_sessions_room", "room_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    match_id: Mapped[str | None] = mapped_column(ForeignKey("matches.id", ondelete="SET NULL"))
    user1_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user2_id: Mapped[str] = mapped_column(String(64), nullable=False)
    initiator_id: Mapped[str | None] = mapped_column(String(64))
    kind: Mapped[SessionKind] = mapped_column(_enum(SessionKind, "session_kind"), nullable=False)
    room_id: Mapped[str] = mapped_column(String(36), nullable=False)
    state: Mapped[SessionState] = mapped_column(_enum(SessionState, "session_state"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime)
    ended_by: Mapped[str | None] = mapped_column(String(64))
    end_reason: Mapped[str | None] = mapped_column(String(32))

    def other(self, user_id: str) -> str:
        return self.user2_id if user_id == self.user1_id else self.user1_id

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    @property
    def participants(self) -> tuple[str, str]:
        return (self.user1_id, self.user2_id)

    @property
    def duration_seconds(self) -> int | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return max(int((self.ended_at - self.started_at).total_seconds()), 0)


class SessionClaim(Base):
    """Marks a user as busy in an ACCEPTED or LIVE session; the primary key enforces one per user."""

    __tablename__ = "session_claims"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("call_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ChatMessage(Base):
    """Message inside a chat room, ordered by (room_id, sent_at, id)."""

    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_room_sent", "room_id", "sent_at", "id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    room_id: Mapped[str] = mapped_column(
        ForeignKey("chat_rooms.room_id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[MessageType] = mapped_column(_enum(MessageType, "message_type"), nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    voice_url: Mapped[str | None] = mapped_column(String(512))
    duration: Mapped[int | None] = mapped_column(Integer)
    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)


class Notification(Base):
    """Durable notification; the pull API is the source of truth for clients."""

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("recipient_id", "type", "match_id", name="uq_notifications_match"),
        UniqueConstraint("recipient_id", "type", "session_id", name="uq_notifications_session"),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=False
    )
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    match_id: Mapped[str | None] = mapped_column(String(36))
    session_id: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime)


class ActivityEvent(Base):
    """Append-only log of terminal transitions, keyed by user."""

    __tablename__ = "activity_events"
    __table_args__ = (Index("ix_activity_events_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[ActivityKind] = mapped_column(_enum(ActivityKind, "activity_kind"), nullable=False)
    partner_id: Mapped[str | None] = mapped_column(String(64))
    match_id: Mapped[str | None] = mapped_column(String(36))
    session_id: Mapped[str | None] = mapped_column(String(36))
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Connection(Base):
    """Two users who accepted each other; removed by unmatch."""

    __tablename__ = "connections"
    __table_args__ = (
        CheckConstraint("user1_id < user2_id", name="chk_connection_canonical_pair"),
        # active_key is set only while ACTIVE
        UniqueConstraint("active_key", name="uq_connections_active_pair"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user1_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user2_id: Mapped[str] = mapped_column(String(64), nullable=False)
    match_id: Mapped[str | None] = mapped_column(String(36))
    status: Mapped[ConnectionStatus] = mapped_column(
        _enum(ConnectionStatus, "connection_status"), nullable=False
    )
    active_key: Mapped[str | None] = mapped_column(String(140))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    removed_at: Mapped[datetime | None] = mapped_column(DateTime)
    removed_by: Mapped[str | None] = mapped_column(String(64))

    def other(self, user_id: str) -> str:
        return self.user2_id if user_id == self.user1_id else self.user1_id

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)


class Report(Base):
    """User report filed against another participant."""

    __tablename__ = "reports"
    __table_args__ = (Index("ix_reports_reporter_created", "reporter_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reported_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[ReportReason] = mapped_column(_enum(ReportReason, "report_reason"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(36))
    status: Mapped[ReportStatus] = mapped_column(
        _enum(ReportStatus, "report_status"), default=ReportStatus.OPEN, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
