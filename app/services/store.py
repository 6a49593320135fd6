"""Transactional store adapter for matches, sessions, rooms, messages and notifications.

All status changes go through compare-and-set updates
(``UPDATE ... WHERE id = :id AND status IN (:expected)``); a zero row count is
reported as :class:`StaleError` so callers never retry a lost race.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import (
    ActiveSessionExistsError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StaleError,
)
from app.models import (
    ACTIVE_SESSION_STATES,
    TERMINAL_SESSION_STATES,
    ActivityEvent,
    ActivityKind,
    CallSession,
    ChatMessage,
    ChatRoom,
    Connection,
    ConnectionStatus,
    Match,
    MatchSource,
    MatchStatus,
    MessageType,
    Notification,
    NotificationType,
    QueueEntry,
    QueueStatus,
    Report,
    ReportReason,
    SessionClaim,
    SessionKind,
    SessionState,
    UserRef,
    canonical_pair,
    pair_key,
    room_id_for,
)

logger = logging.getLogger(__name__)


class MatchmakingStore:
    """Narrow persistence interface over a SQLAlchemy session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator["MatchmakingStore"]:
        """Commit on success, roll back on any error and re-raise it."""

        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def release_snapshot(self) -> None:
        """End the current read transaction so the next query sees committed state."""

        self.db.rollback()

    def flush(self, conflict: type[ConflictError] = ConflictError, detail: str | None = None) -> None:
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise conflict(detail) from exc

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> UserRef | None:
        return self.db.get(UserRef, user_id)

    def require_user(self, user_id: str) -> UserRef:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def get_users(self, user_ids: Iterable[str]) -> dict[str, UserRef]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        users = self.db.execute(select(UserRef).where(UserRef.id.in_(ids))).scalars().all()
        return {user.id: user for user in users}

    # ------------------------------------------------------------------
    # Queue entries
    # ------------------------------------------------------------------
    def get_queue_entry(self, user_id: str) -> QueueEntry | None:
        stmt = select(QueueEntry).where(QueueEntry.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def waiting_entries(self) -> list[QueueEntry]:
        stmt = (
            select(QueueEntry)
            .where(QueueEntry.status == QueueStatus.WAITING)
            .order_by(QueueEntry.enqueued_at, QueueEntry.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def transition_queue_entries(
        self,
        user_ids: Sequence[str],
        expected: QueueStatus,
        target: QueueStatus,
        **values: Any,
    ) -> None:
        """Move every entry for *user_ids* from *expected* to *target* or none of them."""

        stmt = (
            update(QueueEntry)
            .where(QueueEntry.user_id.in_(list(user_ids)), QueueEntry.status == expected)
            .values(status=target, **values)
            .execution_options(synchronize_session="fetch")
        )
        result = self.db.execute(stmt)
        if result.rowcount != len(set(user_ids)):
            raise StaleError("Queue entry changed concurrently")

    def count_queue_by_status(self) -> dict[QueueStatus, int]:
        stmt = select(QueueEntry.status, func.count()).group_by(QueueEntry.status)
        counts = {status: 0 for status in QueueStatus}
        for status, count in self.db.execute(stmt).all():
            counts[QueueStatus(status)] = int(count)
        return counts

    def recent_wait_durations(self, sample_size: int) -> list[float]:
        stmt = (
            select(QueueEntry.enqueued_at, QueueEntry.matched_at)
            .where(QueueEntry.matched_at.is_not(None))
            .order_by(QueueEntry.matched_at.desc())
            .limit(sample_size)
        )
        durations: list[float] = []
        for enqueued_at, matched_at in self.db.execute(stmt).all():
            if matched_at >= enqueued_at:
                durations.append((matched_at - enqueued_at).total_seconds())
        return durations

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------
    def get_match(self, match_id: str) -> Match | None:
        return self.db.get(Match, match_id)

    def require_match(self, match_id: str) -> Match:
        match = self.get_match(match_id)
        if match is None:
            raise NotFoundError("Match not found")
        return match

    def find_pending_match(self, first: str, second: str) -> Match | None:
        stmt = select(Match).where(Match.pending_key == pair_key(first, second))
        return self.db.execute(stmt).scalar_one_or_none()

    def create_match(
        self,
        first: str,
        second: str,
        score: float,
        *,
        status: MatchStatus = MatchStatus.PENDING,
        source: MatchSource = MatchSource.QUEUE,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> Match:
        """Create a match for the unordered pair; at most one may be PENDING."""

        if first == second:
            raise ConflictError("Cannot match a user with themselves")
        now = now or utcnow()
        user1_id, user2_id = canonical_pair(first, second)
        pending = status == MatchStatus.PENDING
        if pending and self.find_pending_match(user1_id, user2_id) is not None:
            raise ConflictError("A pending match already exists for this pair")
        match = Match(
            user1_id=user1_id,
            user2_id=user2_id,
            total_score=max(0.0, min(1.0, float(score))),
            status=status,
            source=source,
            pending_key=pair_key(user1_id, user2_id) if pending else None,
            created_at=now,
            expires_at=now + ttl if pending and ttl is not None else None,
            responded_at=None if pending else now,
        )
        self.db.add(match)
        self.flush(detail="A pending match already exists for this pair")
        return match

    def transition_match(
        self,
        match_id: str,
        expected: MatchStatus | Iterable[MatchStatus],
        target: MatchStatus,
        **values: Any,
    ) -> Match:
        expected_states = [expected] if isinstance(expected, MatchStatus) else list(expected)
        if target != MatchStatus.PENDING:
            values["pending_key"] = None
        stmt = (
            update(Match)
            .where(Match.id == match_id, Match.status.in_(expected_states))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 0:
            if self.db.get(Match, match_id) is None:
                raise NotFoundError("Match not found")
            raise StaleError()
        match = self.db.get(Match, match_id, populate_existing=True)
        assert match is not None
        return match

    def record_acceptance(self, match: Match, user_id: str, *, now: datetime | None = None) -> bool:
        """Stamp *user_id*'s consent on *match*; returns ``False`` if already stamped."""

        now = now or utcnow()
        if user_id == match.user1_id:
            if match.user1_accepted_at is not None:
                return False
            match.user1_accepted_at = now
        elif user_id == match.user2_id:
            if match.user2_accepted_at is not None:
                return False
            match.user2_accepted_at = now
        else:
            raise ForbiddenError("Not a participant of this match")
        self.db.flush()
        return True

    def pending_matches_for(self, user_id: str) -> list[Match]:
        stmt = (
            select(Match)
            .where(
                Match.status == MatchStatus.PENDING,
                or_(Match.user1_id == user_id, Match.user2_id == user_id),
            )
            .order_by(Match.created_at, Match.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def match_history(self, user_id: str, *, limit: int, offset: int = 0) -> list[Match]:
        stmt = (
            select(Match)
            .where(or_(Match.user1_id == user_id, Match.user2_id == user_id))
            .order_by(Match.created_at.desc(), Match.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars().all())

    def matches_between(
        self, first: str, second: str, statuses: Iterable[MatchStatus] | None = None
    ) -> list[Match]:
        user1_id, user2_id = canonical_pair(first, second)
        stmt = select(Match).where(Match.user1_id == user1_id, Match.user2_id == user2_id)
        if statuses is not None:
            stmt = stmt.where(Match.status.in_(list(statuses)))
        return list(self.db.execute(stmt.order_by(Match.created_at)).scalars().all())

    def expired_pending_matches(self, now: datetime) -> list[Match]:
        stmt = (
            select(Match)
            .where(Match.status == MatchStatus.PENDING, Match.expires_at <= now)
            .order_by(Match.expires_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def cooled_pairs(self, user_ids: Iterable[str], since: datetime) -> set[frozenset[str]]:
        """Pairs among *user_ids* that must not be proposed right now.

        Covers pending proposals, matches declined since *since* and sessions
        skipped since *since*.
        """

        ids = list(set(user_ids))
        if len(ids) < 2:
            return set()
        pairs: set[frozenset[str]] = set()
        match_stmt = select(Match.user1_id, Match.user2_id).where(
            Match.user1_id.in_(ids),
            Match.user2_id.in_(ids),
            or_(
                Match.status == MatchStatus.PENDING,
                (Match.status == MatchStatus.DECLINED) & (Match.responded_at >= since),
            ),
        )
        for user1_id, user2_id in self.db.execute(match_stmt).all():
            pairs.add(frozenset((user1_id, user2_id)))
        session_stmt = select(CallSession.user1_id, CallSession.user2_id).where(
            CallSession.user1_id.in_(ids),
            CallSession.user2_id.in_(ids),
            CallSession.state == SessionState.SKIPPED,
            CallSession.ended_at >= since,
        )
        for user1_id, user2_id in self.db.execute(session_stmt).all():
            pairs.add(frozenset((user1_id, user2_id)))
        return pairs

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def get_session(self, session_id: str) -> CallSession | None:
        return self.db.get(CallSession, session_id)

    def require_session(self, session_id: str) -> CallSession:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    def busy_user_ids(self, user_ids: Iterable[str] | None = None) -> set[str]:
        stmt = select(SessionClaim.user_id)
        if user_ids is not None:
            stmt = stmt.where(SessionClaim.user_id.in_(list(user_ids)))
        return set(self.db.execute(stmt).scalars().all())

    def active_session_for(self, user_id: str) -> CallSession | None:
        claim = self.db.get(SessionClaim, user_id)
        if claim is None:
            return None
        return self.db.get(CallSession, claim.session_id)

    def session_for_match(self, match_id: str) -> CallSession | None:
        stmt = (
            select(CallSession)
            .where(CallSession.match_id == match_id)
            .order_by(CallSession.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def open_sessions_between(self, first: str, second: str) -> list[CallSession]:
        user1_id, user2_id = canonical_pair(first, second)
        stmt = select(CallSession).where(
            CallSession.user1_id == user1_id,
            CallSession.user2_id == user2_id,
            CallSession.state.not_in(list(TERMINAL_SESSION_STATES)),
        )
        return list(self.db.execute(stmt).scalars().all())

    def sessions_for_user(
        self,
        user_id: str,
        *,
        states: Iterable[SessionState] | None = None,
        limit: int | None = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[CallSession]:
        stmt = select(CallSession).where(
            or_(CallSession.user1_id == user_id, CallSession.user2_id == user_id)
        )
        if states is not None:
            stmt = stmt.where(CallSession.state.in_(list(states)))
        if newest_first:
            stmt = stmt.order_by(CallSession.created_at.desc(), CallSession.id.desc())
        else:
            stmt = stmt.order_by(CallSession.created_at, CallSession.id)
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def unanswered_calls(self, cutoff: datetime) -> list[CallSession]:
        """Direct calls still ringing since before *cutoff*."""

        stmt = select(CallSession).where(
            CallSession.state == SessionState.PROPOSED,
            CallSession.match_id.is_(None),
            CallSession.created_at <= cutoff,
        )
        return list(self.db.execute(stmt).scalars().all())

    def stalled_negotiations(self, cutoff: datetime) -> list[CallSession]:
        stmt = select(CallSession).where(
            CallSession.state == SessionState.ACCEPTED,
            CallSession.accepted_at <= cutoff,
        )
        return list(self.db.execute(stmt).scalars().all())

    def _check_claims(self, session_id: str | None, user_ids: Iterable[str]) -> None:
        for user_id in user_ids:
            claim = self.db.get(SessionClaim, user_id)
            if claim is not None and claim.session_id != session_id:
                raise ActiveSessionExistsError()

    def _claim(self, session: CallSession, now: datetime) -> None:
        for user_id in session.participants:
            claim = self.db.get(SessionClaim, user_id)
            if claim is not None:
                if claim.session_id == session.id:
                    continue
                raise ActiveSessionExistsError()
            self.db.add(SessionClaim(user_id=user_id, session_id=session.id, created_at=now))
        self.flush(ActiveSessionExistsError)

    def _release(self, session_id: str) -> None:
        self.db.execute(
            delete(SessionClaim)
            .where(SessionClaim.session_id == session_id)
            .execution_options(synchronize_session="fetch")
        )

    def create_session(
        self,
        first: str,
        second: str,
        kind: SessionKind,
        *,
        match_id: str | None = None,
        initiator_id: str | None = None,
        state: SessionState = SessionState.PROPOSED,
        now: datetime | None = None,
    ) -> CallSession:
        """Open a session; fails if either user already holds an ACCEPTED or LIVE one."""

        if first == second:
            raise ConflictError("Cannot open a session with yourself")
        now = now or utcnow()
        user1_id, user2_id = canonical_pair(first, second)
        self._check_claims(None, (user1_id, user2_id))
        session = CallSession(
            match_id=match_id,
            user1_id=user1_id,
            user2_id=user2_id,
            initiator_id=initiator_id,
            kind=kind,
            room_id=room_id_for(user1_id, user2_id),
            state=state,
            created_at=now,
            accepted_at=now if state in ACTIVE_SESSION_STATES else None,
            started_at=now if state == SessionState.LIVE else None,
        )
        self.db.add(session)
        self.db.flush()
        if state in ACTIVE_SESSION_STATES:
            self._claim(session, now)
        return session

    def transition_session(
        self,
        session_id: str,
        expected: SessionState | Iterable[SessionState],
        target: SessionState,
        *,
        now: datetime | None = None,
        ended_by: str | None = None,
        end_reason: str | None = None,
    ) -> CallSession:
        expected_states = [expected] if isinstance(expected, SessionState) else list(expected)
        now = now or utcnow()
        current = self.require_session(session_id)
        if target in ACTIVE_SESSION_STATES:
            self._check_claims(session_id, current.participants)

        values: dict[str, Any] = {"state": target}
        if target == SessionState.ACCEPTED:
            values["accepted_at"] = now
        elif target == SessionState.LIVE:
            values["started_at"] = now
        elif target in TERMINAL_SESSION_STATES:
            values.update(ended_at=now, ended_by=ended_by, end_reason=end_reason)

        stmt = (
            update(CallSession)
            .where(CallSession.id == session_id, CallSession.state.in_(expected_states))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            raise StaleError()
        session = self.db.get(CallSession, session_id, populate_existing=True)
        assert session is not None
        if target in ACTIVE_SESSION_STATES:
            self._claim(session, now)
        elif target in TERMINAL_SESSION_STATES:
            self._release(session_id)
        return session

    # ------------------------------------------------------------------
    # Chat rooms and messages
    # ------------------------------------------------------------------
    def get_chat_room(self, room_id: str) -> ChatRoom | None:
        return self.db.get(ChatRoom, room_id)

    def upsert_chat_room(self, first: str, second: str, *, now: datetime | None = None) -> ChatRoom:
        """Return the room for the unordered pair, creating it on first use."""

        participant1_id, participant2_id = canonical_pair(first, second)
        room_id = room_id_for(participant1_id, participant2_id)
        room = self.db.get(ChatRoom, room_id)
        if room is not None:
            return room
        now = now or utcnow()
        room = ChatRoom(
            room_id=room_id,
            participant1_id=participant1_id,
            participant2_id=participant2_id,
            created_at=now,
            last_activity=now,
        )
        self.db.add(room)
        self.flush(detail="Chat room already exists")
        return room

    def rooms_for_user(self, user_id: str) -> list[ChatRoom]:
        stmt = (
            select(ChatRoom)
            .where(or_(ChatRoom.participant1_id == user_id, ChatRoom.participant2_id == user_id))
            .order_by(ChatRoom.last_activity.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def append_message(
        self,
        room_id: str,
        sender_id: str,
        *,
        type: MessageType = MessageType.TEXT,
        content: str | None = None,
        voice_url: str | None = None,
        duration: int | None = None,
        now: datetime | None = None,
    ) -> ChatMessage:
        room = self.db.get(ChatRoom, room_id)
        if room is None:
            raise NotFoundError("Conversation not found")
        if not room.involves(sender_id):
            raise ForbiddenError("Not a participant of this conversation")
        now = now or utcnow()
        latest = self.db.execute(
            select(func.max(ChatMessage.sent_at)).where(ChatMessage.room_id == room_id)
        ).scalar_one_or_none()
        sent_at = max(now, latest) if latest is not None else now
        message = ChatMessage(
            room_id=room_id,
            sender_id=sender_id,
            type=type,
            content=content,
            voice_url=voice_url,
            duration=duration,
            sent_at=sent_at,
        )
        room.last_activity = sent_at
        self.db.add(message)
        self.db.flush()
        return message

    def get_messages_by_room(self, room_id: str, *, limit: int, offset: int = 0) -> list[ChatMessage]:
        """Page of visible messages counted from the newest, returned oldest-first."""

        stmt = (
            select(ChatMessage)
            .where(ChatMessage.room_id == room_id, ChatMessage.is_deleted.is_(False))
            .order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc())
            .limit(limit)
            .offset(offset)
        )
        messages = list(self.db.execute(stmt).scalars().all())
        messages.reverse()
        return messages

    def last_message(self, room_id: str) -> ChatMessage | None:
        page = self.get_messages_by_room(room_id, limit=1)
        return page[0] if page else None

    def unread_count(self, room_id: str, reader_id: str) -> int:
        stmt = select(func.count()).where(
            ChatMessage.room_id == room_id,
            ChatMessage.sender_id != reader_id,
            ChatMessage.is_read.is_(False),
            ChatMessage.is_deleted.is_(False),
        )
        return int(self.db.execute(stmt).scalar_one())

    def mark_read(self, room_id: str, reader_id: str, *, now: datetime | None = None) -> int:
        """Mark the partner's messages in *room_id* as delivered and read."""

        stmt = (
            update(ChatMessage)
            .where(
                ChatMessage.room_id == room_id,
                ChatMessage.sender_id != reader_id,
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True, is_delivered=True, read_at=now or utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return int(self.db.execute(stmt).rowcount or 0)

    def get_message(self, message_id: int) -> ChatMessage | None:
        return self.db.get(ChatMessage, message_id)

    def mark_message_read(self, message_id: int, reader_id: str, *, now: datetime | None = None) -> ChatMessage:
        message = self.db.get(ChatMessage, message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("Message not found")
        room = self.db.get(ChatRoom, message.room_id)
        if room is None or not room.involves(reader_id):
            raise ForbiddenError("Not a participant of this conversation")
        if message.sender_id != reader_id and not message.is_read:
            message.is_read = True
            message.is_delivered = True
            message.read_at = now or utcnow()
            self.db.flush()
        return message

    def mark_delivered(self, message_ids: Iterable[int]) -> None:
        ids = list(message_ids)
        if not ids:
            return
        self.db.execute(
            update(ChatMessage)
            .where(ChatMessage.id.in_(ids))
            .values(is_delivered=True)
            .execution_options(synchronize_session="fetch")
        )

    def clear_messages(
        self, room_id: str, user_id: str, *, all: bool = False, now: datetime | None = None
    ) -> int:
        """Soft-delete the room's messages, or only *user_id*'s own when ``all`` is false."""

        stmt = update(ChatMessage).where(
            ChatMessage.room_id == room_id, ChatMessage.is_deleted.is_(False)
        )
        if not all:
            stmt = stmt.where(ChatMessage.sender_id == user_id)
        stmt = stmt.values(is_deleted=True, deleted_at=now or utcnow()).execution_options(
            synchronize_session="fetch"
        )
        return int(self.db.execute(stmt).rowcount or 0)

    def delete_message(self, message_id: int, user_id: str, *, now: datetime | None = None) -> ChatMessage:
        message = self.db.get(ChatMessage, message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("Message not found")
        if message.sender_id != user_id:
            raise ForbiddenError("Only the sender can delete a message")
        message.is_deleted = True
        message.deleted_at = now or utcnow()
        self.db.flush()
        return message

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def find_notification(
        self,
        recipient_id: str,
        type: NotificationType,
        *,
        match_id: str | None = None,
        session_id: str | None = None,
    ) -> Notification | None:
        if match_id is None and session_id is None:
            return None
        stmt = select(Notification).where(
            Notification.recipient_id == recipient_id, Notification.type == type
        )
        if match_id is not None:
            stmt = stmt.where(Notification.match_id == match_id)
        if session_id is not None:
            stmt = stmt.where(Notification.session_id == session_id)
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()

    def create_notification(
        self,
        recipient_id: str,
        type: NotificationType,
        data: dict[str, Any],
        *,
        match_id: str | None = None,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> Notification:
        """Insert a notification; raises :class:`ConflictError` for a duplicate."""

        if self.find_notification(recipient_id, type, match_id=match_id, session_id=session_id):
            raise ConflictError("Notification already exists")
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            data=dict(data),
            match_id=match_id,
            session_id=session_id,
            created_at=now or utcnow(),
        )
        self.db.add(notification)
        self.flush(detail="Notification already exists")
        return notification

    def list_notifications(
        self, recipient_id: str, *, limit: int, offset: int = 0, unread_only: bool = False
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def mark_notification_read(
        self, notification_id: str, recipient_id: str, *, now: datetime | None = None
    ) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if notification is None or notification.recipient_id != recipient_id:
            raise NotFoundError("Notification not found")
        if not notification.read:
            notification.read = True
            notification.read_at = now or utcnow()
            self.db.flush()
        return notification

    def mark_all_notifications_read(self, recipient_id: str, *, now: datetime | None = None) -> int:
        stmt = (
            update(Notification)
            .where(Notification.recipient_id == recipient_id, Notification.read.is_(False))
            .values(read=True, read_at=now or utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return int(self.db.execute(stmt).rowcount or 0)

    def mark_match_action_taken(self, match_id: str) -> int:
        stmt = select(Notification).where(
            Notification.match_id == match_id, Notification.type == NotificationType.NEW_MATCH
        )
        updated = 0
        for notification in self.db.execute(stmt).scalars().all():
            if notification.data.get("matchActionTaken"):
                continue
            # JSON columns only notice reassignment
            notification.data = {**notification.data, "matchActionTaken": True}
            updated += 1
        self.db.flush()
        return updated

    def delete_all_notifications_for(self, recipient_id: str) -> int:
        stmt = (
            delete(Notification)
            .where(Notification.recipient_id == recipient_id)
            .execution_options(synchronize_session="fetch")
        )
        return int(self.db.execute(stmt).rowcount or 0)

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------
    def append_activity(
        self,
        user_id: str,
        kind: ActivityKind,
        *,
        partner_id: str | None = None,
        match_id: str | None = None,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ActivityEvent:
        event = ActivityEvent(
            user_id=user_id,
            kind=kind,
            partner_id=partner_id,
            match_id=match_id,
            session_id=session_id,
            details=dict(details or {}),
            created_at=now or utcnow(),
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_activity(self, user_id: str, *, limit: int, offset: int = 0) -> list[ActivityEvent]:
        stmt = (
            select(ActivityEvent)
            .where(ActivityEvent.user_id == user_id)
            .order_by(ActivityEvent.created_at.desc(), ActivityEvent.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.execute(stmt).scalars().all())

    def clear_activity(self, user_id: str) -> int:
        stmt = (
            delete(ActivityEvent)
            .where(ActivityEvent.user_id == user_id)
            .execution_options(synchronize_session="fetch")
        )
        return int(self.db.execute(stmt).rowcount or 0)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def active_connection_between(self, first: str, second: str) -> Connection | None:
        stmt = select(Connection).where(Connection.active_key == pair_key(first, second))
        return self.db.execute(stmt).scalar_one_or_none()

    def create_connection(
        self, first: str, second: str, *, match_id: str | None = None, now: datetime | None = None
    ) -> Connection:
        """Return the active connection for the pair, creating it if needed."""

        existing = self.active_connection_between(first, second)
        if existing is not None:
            return existing
        user1_id, user2_id = canonical_pair(first, second)
        connection = Connection(
            user1_id=user1_id,
            user2_id=user2_id,
            match_id=match_id,
            status=ConnectionStatus.ACTIVE,
            active_key=pair_key(user1_id, user2_id),
            created_at=now or utcnow(),
        )
        self.db.add(connection)
        self.flush(detail="Connection already exists")
        return connection

    def get_connection(self, connection_id: str) -> Connection | None:
        return self.db.get(Connection, connection_id)

    def list_connections(self, user_id: str) -> list[Connection]:
        stmt = (
            select(Connection)
            .where(
                Connection.status == ConnectionStatus.ACTIVE,
                or_(Connection.user1_id == user_id, Connection.user2_id == user_id),
            )
            .order_by(Connection.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def remove_connection(
        self, connection_id: str, removed_by: str, *, now: datetime | None = None
    ) -> Connection:
        stmt = (
            update(Connection)
            .where(Connection.id == connection_id, Connection.status == ConnectionStatus.ACTIVE)
            .values(
                status=ConnectionStatus.REMOVED,
                active_key=None,
                removed_at=now or utcnow(),
                removed_by=removed_by,
            )
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            if self.db.get(Connection, connection_id) is None:
                raise NotFoundError("Connection not found")
            raise StaleError()
        connection = self.db.get(Connection, connection_id, populate_existing=True)
        assert connection is not None
        return connection

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    def create_report(
        self,
        reporter_id: str,
        reported_user_id: str,
        reason: ReportReason,
        description: str,
        *,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> Report:
        report = Report(
            reporter_id=reporter_id,
            reported_user_id=reported_user_id,
            reason=reason,
            description=description,
            session_id=session_id,
            created_at=now or utcnow(),
        )
        self.db.add(report)
        self.db.flush()
        return report

    def reports_by(self, reporter_id: str) -> list[Report]:
        stmt = (
            select(Report)
            .where(Report.reporter_id == reporter_id)
            .order_by(Report.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())


__all__ = ["MatchmakingStore"]
