"""Session orchestration: match acceptance, direct calls, signaling relay and teardown.

Every transition runs under the pair lock of the two participants and is a
compare-and-set in the store. Notifications go out after the transition has
committed; a failed fan-out never undoes the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy.orm import Session

from bella.matching import Waiter, score_pair
from bella.realtime import ConnectionHandle, get_conversation_bus, get_pair_locks, get_presence_registry
from bella.signaling import RELAY_EVENTS, build_relay_envelope

from app.config import get_settings
from app.core.clock import utcnow
from app.core.errors import ConflictError, ForbiddenError, NotFoundError, StaleError, ValidationFailedError
from app.models import (
    ACTIVE_SESSION_STATES,
    OPEN_SESSION_STATES,
    TERMINAL_SESSION_STATES,
    ActivityKind,
    CallResponse,
    CallSession,
    EndReason,
    Match,
    MatchSource,
    MatchStatus,
    NotificationType,
    SessionKind,
    SessionState,
    UserRef,
    room_id_for,
)
from app.monitoring.metrics import (
    match_transitions_total,
    matches_proposed_total,
    session_duration_seconds,
    session_transitions_total,
)
from app.services.notifications import emit_notification
from app.services.requeue import requeue_participants
from app.services.store import MatchmakingStore
from app.services.waiting_queue import WaitingQueue

logger = logging.getLogger(__name__)

settings = get_settings()

TIMEOUT_ACTOR = "TIMEOUT"


@dataclass(slots=True)
class MatchDecision:
    match: Match
    session: CallSession | None
    room_id: str | None


def session_event_data(session: CallSession, **extra: Any) -> dict[str, Any]:
    return {
        "callId": session.id,
        "sessionId": session.id,
        "conversationId": session.room_id,
        **extra,
    }


def _participant_session(store: MatchmakingStore, session_id: str, user_id: str) -> CallSession:
    session = store.require_session(session_id)
    if not session.involves(user_id):
        raise ForbiddenError("Not a participant of this session")
    return session


def _participant_match(store: MatchmakingStore, match_id: str, user_id: str) -> Match:
    match = store.require_match(match_id)
    if not match.involves(user_id):
        raise ForbiddenError("Not a participant of this match")
    return match


def _log_for_both(
    store: MatchmakingStore,
    kind: ActivityKind,
    participants: Iterable[str],
    *,
    match_id: str | None = None,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
    now: datetime,
) -> None:
    first, second = tuple(participants)
    for user_id, partner_id in ((first, second), (second, first)):
        store.append_activity(
            user_id,
            kind,
            partner_id=partner_id,
            match_id=match_id,
            session_id=session_id,
            details=details,
            now=now,
        )


def _end_details(session: CallSession) -> dict[str, Any]:
    return {
        "reason": session.end_reason,
        "endedBy": session.ended_by,
        "durationSeconds": session.duration_seconds,
    }


def _decline_open_proposal(store: MatchmakingStore, session: CallSession, user_id: str, now: datetime) -> None:
    """A proposal session closed before both sides accepted declines its match."""

    if session.match_id is None:
        return
    match = store.get_match(session.match_id)
    if match is None or match.status != MatchStatus.PENDING:
        return
    store.transition_match(
        match.id, MatchStatus.PENDING, MatchStatus.DECLINED, responded_at=now, responded_by=user_id
    )
    store.mark_match_action_taken(match.id)
    match_transitions_total.labels(MatchStatus.DECLINED.value).inc()


async def _announce_end(
    store: MatchmakingStore,
    session: CallSession,
    recipients: Iterable[str],
    *,
    now: datetime,
) -> None:
    data = session_event_data(
        session,
        state=session.state.value,
        endedBy=session.ended_by,
        reason=session.end_reason,
        durationSeconds=session.duration_seconds,
    )
    if session.duration_seconds is not None:
        session_duration_seconds.labels(session.state.value).observe(session.duration_seconds)
    await get_conversation_bus().publish(session.room_id, "call-ended", data)
    for recipient in recipients:
        await emit_notification(
            store,
            recipient,
            NotificationType.CALL_ENDED,
            data,
            session_id=session.id,
            skip_conversation=session.room_id,
            now=now,
        )


def _end_recipients(session: CallSession, previous: SessionState, actor: str) -> list[str]:
    if previous in ACTIVE_SESSION_STATES:
        return list(session.participants)
    if actor == TIMEOUT_ACTOR:
        return [session.initiator_id or session.user1_id]
    return [session.other(actor)]


# ----------------------------------------------------------------------
# Matches
# ----------------------------------------------------------------------
async def accept_match(
    store: MatchmakingStore, match_id: str, user_id: str, *, now: datetime | None = None
) -> MatchDecision:
    """Record *user_id*'s acceptance; the second acceptance opens the session.

    The first acceptance creates the session in PROPOSED so both callers get
    the same session id. Repeated calls return that session unchanged.
    """

    now = now or utcnow()
    match = _participant_match(store, match_id, user_id)
    first, second = match.user1_id, match.user2_id

    async with get_pair_locks().hold(first, second):
        store.release_snapshot()
        match = store.require_match(match_id)
        if match.status == MatchStatus.ACCEPTED:
            session = store.session_for_match(match.id)
            return MatchDecision(match, session, room_id_for(first, second))
        if match.status != MatchStatus.PENDING:
            raise StaleError()

        completed = False
        with store.transaction():
            store.record_acceptance(match, user_id, now=now)
            session = store.session_for_match(match.id)
            if session is None or session.state in TERMINAL_SESSION_STATES:
                session = store.create_session(
                    first,
                    second,
                    SessionKind.VIDEO,
                    match_id=match.id,
                    initiator_id=user_id,
                    state=SessionState.PROPOSED,
                    now=now,
                )
            if match.user1_accepted_at is not None and match.user2_accepted_at is not None:
                match = store.transition_match(
                    match.id,
                    MatchStatus.PENDING,
                    MatchStatus.ACCEPTED,
                    responded_at=now,
                    responded_by=user_id,
                )
                session = store.transition_session(
                    session.id, SessionState.PROPOSED, SessionState.ACCEPTED, now=now
                )
                store.upsert_chat_room(first, second, now=now)
                store.create_connection(first, second, match_id=match.id, now=now)
                store.mark_match_action_taken(match.id)
                _log_for_both(
                    store,
                    ActivityKind.MATCH_ACCEPTED,
                    (first, second),
                    match_id=match.id,
                    session_id=session.id,
                    now=now,
                )
                completed = True

    if not completed:
        logger.info("User %s accepted match %s; waiting for partner", user_id, match_id)
        return MatchDecision(match, session, session.room_id)

    match_transitions_total.labels(MatchStatus.ACCEPTED.value).inc()
    session_transitions_total.labels(SessionState.ACCEPTED.value, "match").inc()
    logger.info("Match %s accepted; session %s opened", match.id, session.id)
    partner_id = match.other(user_id)
    await emit_notification(
        store,
        partner_id,
        NotificationType.CALL_ACCEPTED,
        session_event_data(
            session,
            matchId=match.id,
            roomId=session.room_id,
            response=CallResponse.ACCEPT.value,
            responderId=user_id,
        ),
        session_id=session.id,
        now=now,
    )
    return MatchDecision(match, session, session.room_id)


async def decline_match(
    store: MatchmakingStore, match_id: str, user_id: str, *, now: datetime | None = None
) -> Match:
    now = now or utcnow()
    match = _participant_match(store, match_id, user_id)
    ended: CallSession | None = None

    async with get_pair_locks().hold(match.user1_id, match.user2_id):
        store.release_snapshot()
        with store.transaction():
            match = store.transition_match(
                match_id,
                MatchStatus.PENDING,
                MatchStatus.DECLINED,
                responded_at=now,
                responded_by=user_id,
            )
            session = store.session_for_match(match.id)
            if session is not None and session.state == SessionState.PROPOSED:
                ended = store.transition_session(
                    session.id,
                    SessionState.PROPOSED,
                    SessionState.ENDED,
                    now=now,
                    ended_by=user_id,
                    end_reason=EndReason.DECLINED.value,
                )
            store.mark_match_action_taken(match.id)
            _log_for_both(
                store,
                ActivityKind.MATCH_DECLINED,
                (match.user1_id, match.user2_id),
                match_id=match.id,
                details={"declinedBy": user_id},
                now=now,
            )

    match_transitions_total.labels(MatchStatus.DECLINED.value).inc()
    if ended is not None:
        session_transitions_total.labels(SessionState.ENDED.value, EndReason.DECLINED.value).inc()
    logger.info("Match %s declined by %s", match.id, user_id)
    await emit_notification(
        store,
        match.other(user_id),
        NotificationType.CALL_DECLINED,
        {
            "matchId": match.id,
            "sessionId": ended.id if ended is not None else None,
            "response": CallResponse.DECLINE.value,
            "responderId": user_id,
        },
        match_id=match.id,
        now=now,
    )
    return match


def _profile_waiter(user: UserRef) -> Waiter:
    return Waiter.from_preferences(
        user.id,
        0.0,
        {},
        age=user.age,
        gender=user.gender.value if user.gender is not None else None,
        profile_interests=user.interests or (),
        profile_location=user.location,
    )


async def create_match_from_suggestion(
    store: MatchmakingStore, user_id: str, other_user_id: str, *, now: datetime | None = None
) -> MatchDecision:
    """One-sided shortcut: an ACCEPTED match and an ACCEPTED session in one step."""

    now = now or utcnow()
    if user_id == other_user_id:
        raise ValidationFailedError("Cannot match with yourself")
    user = store.require_user(user_id)
    other = store.require_user(other_user_id)
    score = score_pair(_profile_waiter(user), _profile_waiter(other))

    async with get_pair_locks().hold(user_id, other_user_id):
        store.release_snapshot()
        with store.transaction():
            if store.find_pending_match(user_id, other_user_id) is not None:
                raise ConflictError("A pending match already exists for this pair")
            match = store.create_match(
                user_id,
                other_user_id,
                score,
                status=MatchStatus.ACCEPTED,
                source=MatchSource.SUGGESTION,
                now=now,
            )
            match.user1_accepted_at = now if match.user1_id == user_id else None
            match.user2_accepted_at = now if match.user2_id == user_id else None
            match.responded_by = user_id
            session = store.create_session(
                user_id,
                other_user_id,
                SessionKind.VIDEO,
                match_id=match.id,
                initiator_id=user_id,
                state=SessionState.ACCEPTED,
                now=now,
            )
            store.upsert_chat_room(user_id, other_user_id, now=now)
            store.create_connection(user_id, other_user_id, match_id=match.id, now=now)
            _log_for_both(
                store,
                ActivityKind.MATCH_ACCEPTED,
                (user_id, other_user_id),
                match_id=match.id,
                session_id=session.id,
                details={"source": MatchSource.SUGGESTION.value},
                now=now,
            )

    matches_proposed_total.labels(MatchSource.SUGGESTION.value).inc()
    session_transitions_total.labels(SessionState.ACCEPTED.value, "suggestion").inc()
    logger.info("Suggestion match %s created by %s for %s", match.id, user_id, other_user_id)
    await emit_notification(
        store,
        other_user_id,
        NotificationType.NEW_MATCH,
        {
            "matchId": match.id,
            "partnerId": user_id,
            "partnerName": user.name,
            "partnerProfilePicture": user.profile_picture_url,
            "matchScore": round(match.total_score, 4),
            "sessionId": session.id,
            "roomId": session.room_id,
            "matchActionTaken": True,
        },
        match_id=match.id,
        now=now,
    )
    return MatchDecision(match, session, session.room_id)


# ----------------------------------------------------------------------
# Direct calls
# ----------------------------------------------------------------------
async def start_direct_call(
    store: MatchmakingStore,
    caller_id: str,
    callee_id: str,
    kind: SessionKind,
    *,
    sender: ConnectionHandle | None = None,
    now: datetime | None = None,
) -> CallSession:
    """Ring *callee_id*, opening their conversation first; unanswered calls time out."""

    now = now or utcnow()
    if caller_id == callee_id:
        raise ValidationFailedError("Cannot call yourself")
    caller = store.require_user(caller_id)
    store.require_user(callee_id)

    async with get_pair_locks().hold(caller_id, callee_id):
        store.release_snapshot()
        with store.transaction():
            if store.open_sessions_between(caller_id, callee_id):
                raise ConflictError("A call with this user is already in progress")
            store.upsert_chat_room(caller_id, callee_id, now=now)
            session = store.create_session(
                caller_id,
                callee_id,
                kind,
                initiator_id=caller_id,
                state=SessionState.PROPOSED,
                now=now,
            )

    session_transitions_total.labels(SessionState.PROPOSED.value, "call").inc()
    logger.info("User %s is calling %s (session %s)", caller_id, callee_id, session.id)
    data = session_event_data(
        session,
        callerId=caller_id,
        callType=kind.value,
        callerName=caller.name,
        callerProfile=caller.profile_picture_url,
    )
    await get_conversation_bus().publish(session.room_id, "call-request", data, sender=sender)
    await emit_notification(
        store,
        callee_id,
        NotificationType.CALL_REQUEST,
        data,
        session_id=session.id,
        skip_conversation=session.room_id,
        now=now,
    )
    return session


async def call_response(
    store: MatchmakingStore,
    session_id: str,
    responder_id: str,
    response: CallResponse,
    *,
    sender: ConnectionHandle | None = None,
    now: datetime | None = None,
) -> CallSession:
    now = now or utcnow()
    session = _participant_session(store, session_id, responder_id)
    if session.match_id is not None:
        raise ConflictError("Match proposals are answered through the match endpoints")
    if session.initiator_id == responder_id:
        raise ForbiddenError("The caller cannot answer their own call")

    async with get_pair_locks().hold(session.user1_id, session.user2_id):
        store.release_snapshot()
        with store.transaction():
            if response == CallResponse.ACCEPT:
                session = store.transition_session(
                    session_id, SessionState.PROPOSED, SessionState.ACCEPTED, now=now
                )
            else:
                session = store.transition_session(
                    session_id,
                    SessionState.PROPOSED,
                    SessionState.ENDED,
                    now=now,
                    ended_by=responder_id,
                    end_reason=EndReason.DECLINED.value,
                )
                _log_for_both(
                    store,
                    ActivityKind.CALL_ENDED,
                    session.participants,
                    session_id=session.id,
                    details={**_end_details(session), "response": response.value},
                    now=now,
                )

    session_transitions_total.labels(session.state.value, response.value).inc()
    logger.info("Session %s answered with %s by %s", session.id, response.value, responder_id)
    data = session_event_data(session, response=response.value, responderId=responder_id)
    await get_conversation_bus().publish(session.room_id, "call-response", data, sender=sender)
    notification_type = (
        NotificationType.CALL_ACCEPTED if response == CallResponse.ACCEPT else NotificationType.CALL_DECLINED
    )
    await emit_notification(
        store,
        session.initiator_id or session.other(responder_id),
        notification_type,
        data,
        session_id=session.id,
        skip_conversation=session.room_id,
        now=now,
    )
    return session


# ----------------------------------------------------------------------
# Signaling relay
# ----------------------------------------------------------------------
async def relay_signal(
    store: MatchmakingStore,
    from_user_id: str,
    event: str,
    data: dict[str, Any],
    *,
    now: datetime | None = None,
) -> int:
    """Forward an offer, answer or ICE candidate to the other participant.

    The payload is passed through untouched. A relayed answer marks the
    session LIVE. Returns the number of local connections reached.
    """

    if event not in RELAY_EVENTS:
        raise ValidationFailedError(f"Unsupported relay event '{event}'")
    target_user_id = data.get("targetUserId")
    if not isinstance(target_user_id, str) or not target_user_id:
        raise ValidationFailedError("targetUserId is required")
    session_id = data.get("sessionId")
    if session_id:
        session = _participant_session(store, str(session_id), from_user_id)
    else:
        session = store.active_session_for(from_user_id)
        if session is None:
            raise NotFoundError("No active session")
    if session.other(from_user_id) != target_user_id:
        raise ForbiddenError("Target is not the session partner")
    if session.state not in ACTIVE_SESSION_STATES:
        raise ConflictError("Session is not active")

    if event == "webrtc-answer" and session.state == SessionState.ACCEPTED:
        await _mark_live(store, session.id, now=now or utcnow())

    frame = build_relay_envelope(
        event, from_user_id=from_user_id, session_id=session.id, payload=data.get("payload")
    )
    return await get_presence_registry().fanout_to_user(target_user_id, frame)


async def _mark_live(store: MatchmakingStore, session_id: str, *, now: datetime) -> None:
    session = store.require_session(session_id)
    async with get_pair_locks().hold(session.user1_id, session.user2_id):
        store.release_snapshot()
        try:
            with store.transaction():
                session = store.transition_session(
                    session_id, SessionState.ACCEPTED, SessionState.LIVE, now=now
                )
                _log_for_both(
                    store,
                    ActivityKind.CALL_STARTED,
                    session.participants,
                    match_id=session.match_id,
                    session_id=session.id,
                    details={"kind": session.kind.value},
                    now=now,
                )
        except StaleError:
            return
    session_transitions_total.labels(SessionState.LIVE.value, "answer").inc()
    logger.info("Session %s is live", session_id)


# ----------------------------------------------------------------------
# Teardown
# ----------------------------------------------------------------------
async def end_session(
    store: MatchmakingStore,
    session_id: str,
    user_id: str,
    *,
    auto_requeue: bool = False,
    now: datetime | None = None,
) -> CallSession:
    """End a session; ending an already finished session is a no-op."""

    now = now or utcnow()
    session = _participant_session(store, session_id, user_id)
    if session.state in TERMINAL_SESSION_STATES:
        return session

    async with get_pair_locks().hold(session.user1_id, session.user2_id):
        store.release_snapshot()
        session = store.require_session(session_id)
        if session.state in TERMINAL_SESSION_STATES:
            return session
        previous = session.state
        with store.transaction():
            session = store.transition_session(
                session_id,
                OPEN_SESSION_STATES,
                SessionState.ENDED,
                now=now,
                ended_by=user_id,
                end_reason=EndReason.ENDED.value,
            )
            if previous == SessionState.PROPOSED:
                _decline_open_proposal(store, session, user_id, now)
            _log_for_both(
                store,
                ActivityKind.CALL_ENDED,
                session.participants,
                match_id=session.match_id,
                session_id=session.id,
                details=_end_details(session),
                now=now,
            )

    session_transitions_total.labels(SessionState.ENDED.value, EndReason.ENDED.value).inc()
    logger.info("Session %s ended by %s", session.id, user_id)
    await _announce_end(store, session, _end_recipients(session, previous, user_id), now=now)
    if auto_requeue:
        await requeue_participants(store, session, force=True, now=now)
    return session


async def skip_session(
    store: MatchmakingStore, session_id: str, user_id: str, *, now: datetime | None = None
) -> CallSession:
    """End the session as skipped and put both participants back in the queue."""

    now = now or utcnow()
    session = _participant_session(store, session_id, user_id)

    async with get_pair_locks().hold(session.user1_id, session.user2_id):
        store.release_snapshot()
        session = store.require_session(session_id)
        previous = session.state
        with store.transaction():
            session = store.transition_session(
                session_id,
                OPEN_SESSION_STATES,
                SessionState.SKIPPED,
                now=now,
                ended_by=user_id,
                end_reason=EndReason.SKIPPED.value,
            )
            if previous == SessionState.PROPOSED:
                _decline_open_proposal(store, session, user_id, now)
            _log_for_both(
                store,
                ActivityKind.CALL_SKIPPED,
                session.participants,
                match_id=session.match_id,
                session_id=session.id,
                details=_end_details(session),
                now=now,
            )

    session_transitions_total.labels(SessionState.SKIPPED.value, EndReason.SKIPPED.value).inc()
    logger.info("Session %s skipped by %s", session.id, user_id)
    await _announce_end(store, session, _end_recipients(session, previous, user_id), now=now)
    await requeue_participants(store, session, force=True, now=now)
    return session


async def _time_out_session(
    store: MatchmakingStore,
    session_id: str,
    expected: SessionState,
    reason: EndReason,
    *,
    now: datetime,
) -> CallSession | None:
    session = store.get_session(session_id)
    if session is None:
        return None
    async with get_pair_locks().hold(session.user1_id, session.user2_id):
        store.release_snapshot()
        try:
            with store.transaction():
                session = store.transition_session(
                    session_id,
                    expected,
                    SessionState.ENDED,
                    now=now,
                    ended_by=TIMEOUT_ACTOR,
                    end_reason=reason.value,
                )
                _log_for_both(
                    store,
                    ActivityKind.CALL_ENDED,
                    session.participants,
                    match_id=session.match_id,
                    session_id=session.id,
                    details=_end_details(session),
                    now=now,
                )
        except StaleError:
            return None
    session_transitions_total.labels(SessionState.ENDED.value, reason.value).inc()
    logger.info("Session %s timed out (%s)", session_id, reason.value)
    await _announce_end(store, session, _end_recipients(session, expected, TIMEOUT_ACTOR), now=now)
    return session


async def expire_unanswered_calls(db: Session, *, now: datetime | None = None) -> list[str]:
    """End direct calls that rang longer than the ring timeout."""

    now = now or utcnow()
    store = MatchmakingStore(db)
    cutoff = now - timedelta(milliseconds=settings.call_ring_ms)
    candidates = [session.id for session in store.unanswered_calls(cutoff)]
    store.release_snapshot()
    ended: list[str] = []
    for session_id in candidates:
        if await _time_out_session(store, session_id, SessionState.PROPOSED, EndReason.TIMEOUT, now=now):
            ended.append(session_id)
    return ended


async def expire_stalled_negotiations(db: Session, *, now: datetime | None = None) -> list[str]:
    """End ACCEPTED sessions that never received an answer within the negotiation window."""

    now = now or utcnow()
    store = MatchmakingStore(db)
    cutoff = now - timedelta(milliseconds=settings.negotiation_ttl_ms)
    candidates = [session.id for session in store.stalled_negotiations(cutoff)]
    store.release_snapshot()
    ended: list[str] = []
    for session_id in candidates:
        if await _time_out_session(
            store, session_id, SessionState.ACCEPTED, EndReason.NEGOTIATION_TIMEOUT, now=now
        ):
            ended.append(session_id)
    return ended


async def expire_proposals(db: Session, *, now: datetime | None = None) -> list[str]:
    """Expire PENDING matches past their deadline and return both users to WAITING."""

    now = now or utcnow()
    store = MatchmakingStore(db)
    candidates = [(match.id, match.user1_id, match.user2_id) for match in store.expired_pending_matches(now)]
    store.release_snapshot()
    queue = WaitingQueue(store)
    expired: list[str] = []
    for match_id, first, second in candidates:
        async with get_pair_locks().hold(first, second):
            store.release_snapshot()
            try:
                with store.transaction():
                    store.transition_match(
                        match_id, MatchStatus.PENDING, MatchStatus.EXPIRED, responded_at=now
                    )
                    session = store.session_for_match(match_id)
                    if session is not None and session.state == SessionState.PROPOSED:
                        store.transition_session(
                            session.id,
                            SessionState.PROPOSED,
                            SessionState.ENDED,
                            now=now,
                            ended_by=TIMEOUT_ACTOR,
                            end_reason=EndReason.TIMEOUT.value,
                        )
                    store.mark_match_action_taken(match_id)
                    for user_id in (first, second):
                        if store.pending_matches_for(user_id):
                            continue
                        queue.requeue(user_id, touch=False, now=now)
            except StaleError:
                continue
        match_transitions_total.labels(MatchStatus.EXPIRED.value).inc()
        expired.append(match_id)
    if expired:
        logger.info("Expired %d match proposals", len(expired))
    return expired


# ----------------------------------------------------------------------
# Unmatch
# ----------------------------------------------------------------------
async def unmatch(
    store: MatchmakingStore,
    user_id: str,
    other_user_id: str,
    *,
    clear_messages: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Remove the connection with *other_user_id* and everything that hangs off it."""

    now = now or utcnow()
    if user_id == other_user_id:
        raise ValidationFailedError("Cannot unmatch yourself")
    ended: list[tuple[CallSession, SessionState]] = []

    async with get_pair_locks().hold(user_id, other_user_id):
        store.release_snapshot()
        with store.transaction():
            connection = store.active_connection_between(user_id, other_user_id)
            if connection is not None:
                store.remove_connection(connection.id, user_id, now=now)
            matches = store.matches_between(
                user_id, other_user_id, (MatchStatus.PENDING, MatchStatus.ACCEPTED)
            )
            room = store.get_chat_room(room_id_for(user_id, other_user_id))
            if connection is None and not matches and room is None:
                raise NotFoundError("No connection with this user")
            for match in matches:
                store.transition_match(
                    match.id,
                    (MatchStatus.PENDING, MatchStatus.ACCEPTED),
                    MatchStatus.DECLINED,
                    responded_at=now,
                    responded_by=user_id,
                )
                store.mark_match_action_taken(match.id)
            for session in store.open_sessions_between(user_id, other_user_id):
                previous = session.state
                session = store.transition_session(
                    session.id,
                    OPEN_SESSION_STATES,
                    SessionState.ENDED,
                    now=now,
                    ended_by=user_id,
                    end_reason=EndReason.UNMATCHED.value,
                )
                ended.append((session, previous))
            cleared = 0
            if room is not None and clear_messages:
                cleared = store.clear_messages(room.room_id, user_id, all=True, now=now)
            store.append_activity(
                user_id,
                ActivityKind.UNMATCH,
                partner_id=other_user_id,
                details={"clearedMessages": cleared, "endedSessions": len(ended)},
                now=now,
            )

    for _ in matches:
        match_transitions_total.labels(MatchStatus.DECLINED.value).inc()
    logger.info("User %s unmatched %s", user_id, other_user_id)
    for session, previous in ended:
        session_transitions_total.labels(SessionState.ENDED.value, EndReason.UNMATCHED.value).inc()
        await _announce_end(store, session, _end_recipients(session, previous, user_id), now=now)
    return {
        "connectionRemoved": connection is not None,
        "matchesDeclined": len(matches),
        "sessionsEnded": len(ended),
        "messagesCleared": cleared,
    }


async def remove_connection(
    store: MatchmakingStore,
    connection_id: str,
    user_id: str,
    *,
    clear_messages: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    connection = store.get_connection(connection_id)
    if connection is None or not connection.involves(user_id):
        raise NotFoundError("Connection not found")
    return await unmatch(
        store, user_id, connection.other(user_id), clear_messages=clear_messages, now=now
    )


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------
def get_session(store: MatchmakingStore, session_id: str, user_id: str) -> CallSession:
    return _participant_session(store, session_id, user_id)


def active_sessions(store: MatchmakingStore, user_id: str) -> list[CallSession]:
    return store.sessions_for_user(user_id, states=ACTIVE_SESSION_STATES)


def session_history(
    store: MatchmakingStore, user_id: str, *, limit: int, offset: int = 0
) -> list[CallSession]:
    return store.sessions_for_user(user_id, limit=limit, offset=offset)


__all__ = [
    "MatchDecision",
    "accept_match",
    "active_sessions",
    "call_response",
    "create_match_from_suggestion",
    "decline_match",
    "end_session",
    "expire_proposals",
    "expire_stalled_negotiations",
    "expire_unanswered_calls",
    "get_session",
    "relay_signal",
    "remove_connection",
    "session_event_data",
    "session_history",
    "skip_session",
    "start_direct_call",
    "unmatch",
]
