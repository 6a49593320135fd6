"""Session orchestration: acceptance, skips, direct calls and timeouts."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.api import ws as ws_module
from app.core.clock import utcnow
from app.core.errors import ConflictError, ForbiddenError, NotFoundError, StaleError, ValidationFailedError
from app.models import (
    ActivityKind,
    CallResponse,
    ConnectionStatus,
    EndReason,
    Gender,
    MatchStatus,
    NotificationType,
    QueueStatus,
    SessionKind,
    SessionState,
    room_id_for,
)
from app.schemas import QueuePreferences
from app.services import sessions as session_service
from app.services.matcher import run_tick
from app.services.waiting_queue import WaitingQueue
from bella.realtime import ConnectionHandle, get_presence_registry

T0 = datetime(2026, 10, 19, 12, 0, 0)

PREFS = {
    "ageRange": {"min": 25, "max": 35},
    "genderPreference": "ANY",
    "maxDistanceKm": 100,
    "interests": ["travel"],
}


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.sent]


def _types(store, user_id: str) -> list[NotificationType]:
    return [n.type for n in reversed(store.list_notifications(user_id, limit=50))]


@pytest.fixture()
def pair(make_user):
    make_user("u1", age=27, gender=Gender.MAN, interests=["coffee", "travel"])
    make_user("u2", age=29, gender=Gender.WOMAN, interests=["travel", "music"])
    return "u1", "u2"


@pytest.fixture()
async def proposed_match(store, pair):
    for user_id in pair:
        with store.transaction():
            WaitingQueue(store).enqueue(user_id, QueuePreferences.model_validate(PREFS), now=T0)
    [match] = await run_tick(store.db, now=T0)
    return match.id


async def _accepted(store, match_id: str):
    await session_service.accept_match(store, match_id, "u1", now=T0 + timedelta(seconds=5))
    return await session_service.accept_match(store, match_id, "u2", now=T0 + timedelta(seconds=6))


# ----------------------------------------------------------------------
# Match acceptance
# ----------------------------------------------------------------------
@pytest.mark.anyio
async def test_both_acceptances_share_one_session_and_room(store, proposed_match):
    first = await session_service.accept_match(store, proposed_match, "u1", now=T0 + timedelta(seconds=5))
    assert first.match.status == MatchStatus.PENDING
    assert first.session.state == SessionState.PROPOSED

    second = await session_service.accept_match(store, proposed_match, "u2", now=T0 + timedelta(seconds=6))

    assert second.match.status == MatchStatus.ACCEPTED
    assert second.session.id == first.session.id
    assert second.session.state == SessionState.ACCEPTED
    assert second.room_id == first.room_id == room_id_for("u1", "u2")
    assert store.get_chat_room(second.room_id) is not None
    assert store.active_connection_between("u1", "u2").status == ConnectionStatus.ACTIVE
    assert store.busy_user_ids() == {"u1", "u2"}
    assert NotificationType.CALL_ACCEPTED in _types(store, "u1")
    pending = store.list_notifications("u1", limit=10)
    new_match = next(n for n in pending if n.type == NotificationType.NEW_MATCH)
    assert new_match.data["matchActionTaken"] is True


@pytest.mark.anyio
async def test_accepting_twice_returns_the_same_session(store, proposed_match):
    decision = await _accepted(store, proposed_match)

    again = await session_service.accept_match(store, proposed_match, "u1", now=T0 + timedelta(seconds=9))
    repeat = await session_service.accept_match(store, proposed_match, "u2", now=T0 + timedelta(seconds=9))

    assert again.session.id == repeat.session.id == decision.session.id
    assert _types(store, "u1").count(NotificationType.CALL_ACCEPTED) == 1


@pytest.mark.anyio
async def test_outsiders_cannot_accept(store, proposed_match, make_user):
    make_user("u3")

    with pytest.raises(ForbiddenError):
        await session_service.accept_match(store, proposed_match, "u3", now=T0)


@pytest.mark.anyio
async def test_decline_after_partner_accepted_ends_the_proposal_session(store, proposed_match):
    first = await session_service.accept_match(store, proposed_match, "u1", now=T0 + timedelta(seconds=5))

    match = await session_service.decline_match(store, proposed_match, "u2", now=T0 + timedelta(seconds=7))

    assert match.status == MatchStatus.DECLINED
    session = store.require_session(first.session.id)
    assert session.state == SessionState.ENDED
    assert session.end_reason == EndReason.DECLINED.value
    assert NotificationType.CALL_DECLINED in _types(store, "u1")
    with pytest.raises(StaleError):
        await session_service.accept_match(store, proposed_match, "u1", now=T0 + timedelta(seconds=8))


@pytest.mark.anyio
async def test_proposal_expiry_returns_both_users_to_the_queue(store, proposed_match):
    expired = await session_service.expire_proposals(store.db, now=T0 + timedelta(minutes=3))

    assert expired == [proposed_match]
    assert store.require_match(proposed_match).status == MatchStatus.EXPIRED
    for user_id in ("u1", "u2"):
        entry = store.get_queue_entry(user_id)
        assert entry.status == QueueStatus.WAITING
        assert entry.last_seen_at == T0


@pytest.mark.anyio
async def test_socket_heartbeats_during_a_proposal_survive_expiry_and_gc(store, pair):
    now = utcnow()
    proposed_at = now - timedelta(seconds=200)
    for user_id in pair:
        with store.transaction():
            WaitingQueue(store).enqueue(user_id, QueuePreferences.model_validate(PREFS), now=proposed_at)
    [match] = await run_tick(store.db, now=proposed_at)
    match_id = match.id
    store.release_snapshot()

    for user_id in pair:
        await ws_module._heartbeat(ConnectionHandle(user_id=user_id, websocket=DummyWebSocket()), {})

    store.release_snapshot()
    assert store.get_queue_entry("u1").status == QueueStatus.MATCHED
    assert store.get_queue_entry("u1").last_seen_at > proposed_at

    assert await session_service.expire_proposals(store.db, now=now) == [match_id]
    with store.transaction():
        assert WaitingQueue(store).collect_stale(now=now) == []
    store.release_snapshot()
    for user_id in pair:
        assert store.get_queue_entry(user_id).status == QueueStatus.WAITING


# ----------------------------------------------------------------------
# Live sessions, skip and end
# ----------------------------------------------------------------------
@pytest.mark.anyio
async def test_relayed_answer_marks_session_live(store, proposed_match):
    decision = await _accepted(store, proposed_match)
    caller_socket = DummyWebSocket()
    await get_presence_registry().attach(ConnectionHandle(user_id="u1", websocket=caller_socket))

    answer = {"type": "answer", "sdp": "v=0"}
    delivered = await session_service.relay_signal(
        store,
        "u2",
        "webrtc-answer",
        {"targetUserId": "u1", "sessionId": decision.session.id, "payload": answer},
        now=T0 + timedelta(seconds=8),
    )

    assert delivered == 1
    assert caller_socket.sent[-1] == {
        "event": "webrtc-answer",
        "data": {"fromUserId": "u2", "sessionId": decision.session.id, "payload": answer},
    }
    session = store.require_session(decision.session.id)
    assert session.state == SessionState.LIVE
    assert session.started_at == T0 + timedelta(seconds=8)


@pytest.mark.anyio
async def test_relay_only_reaches_the_session_partner(store, proposed_match, make_user):
    decision = await _accepted(store, proposed_match)
    make_user("u3")

    with pytest.raises(ForbiddenError):
        await session_service.relay_signal(
            store, "u1", "webrtc-offer", {"targetUserId": "u3", "sessionId": decision.session.id}
        )
    with pytest.raises(ValidationFailedError):
        await session_service.relay_signal(store, "u1", "webrtc-offer", {"sessionId": decision.session.id})


@pytest.mark.anyio
async def test_skip_requeues_both_participants(store, proposed_match):
    decision = await _accepted(store, proposed_match)
    await session_service.relay_signal(
        store,
        "u2",
        "webrtc-answer",
        {"targetUserId": "u1", "sessionId": decision.session.id, "payload": {}},
        now=T0 + timedelta(seconds=8),
    )
    skipped_at = T0 + timedelta(minutes=4)

    session = await session_service.skip_session(store, decision.session.id, "u1", now=skipped_at)

    assert session.state == SessionState.SKIPPED
    assert session.duration_seconds == 232
    assert store.busy_user_ids() == set()
    for user_id in ("u1", "u2"):
        entry = store.get_queue_entry(user_id)
        assert entry.status == QueueStatus.WAITING
        assert entry.enqueued_at == skipped_at
        assert NotificationType.CALL_ENDED in _types(store, user_id)
    assert WaitingQueue(store).status("u1").state == QueueStatus.WAITING.value
    kinds = [event.kind for event in store.list_activity("u2", limit=10)]
    assert ActivityKind.CALL_SKIPPED in kinds


@pytest.mark.anyio
async def test_end_session_is_idempotent(store, proposed_match):
    decision = await _accepted(store, proposed_match)

    ended = await session_service.end_session(store, decision.session.id, "u2", now=T0 + timedelta(minutes=1))
    again = await session_service.end_session(store, decision.session.id, "u1", now=T0 + timedelta(minutes=2))

    assert ended.state == again.state == SessionState.ENDED
    assert again.ended_by == "u2"
    assert again.ended_at == T0 + timedelta(minutes=1)
    assert _types(store, "u1").count(NotificationType.CALL_ENDED) == 1
    assert store.busy_user_ids() == set()


@pytest.mark.anyio
async def test_end_with_auto_requeue(store, proposed_match):
    decision = await _accepted(store, proposed_match)

    await session_service.end_session(
        store, decision.session.id, "u1", auto_requeue=True, now=T0 + timedelta(minutes=1)
    )

    assert store.get_queue_entry("u2").status == QueueStatus.WAITING


@pytest.mark.anyio
async def test_negotiation_timeout_ends_accepted_sessions(store, proposed_match):
    decision = await _accepted(store, proposed_match)

    assert await session_service.expire_stalled_negotiations(store.db, now=T0 + timedelta(seconds=20)) == []
    ended = await session_service.expire_stalled_negotiations(store.db, now=T0 + timedelta(seconds=40))

    assert ended == [decision.session.id]
    session = store.require_session(decision.session.id)
    assert session.state == SessionState.ENDED
    assert session.end_reason == EndReason.NEGOTIATION_TIMEOUT.value
    assert store.busy_user_ids() == set()


@pytest.mark.anyio
async def test_suggestion_opens_an_accepted_session_immediately(store, pair):
    decision = await session_service.create_match_from_suggestion(store, "u1", "u2", now=T0)

    assert decision.match.status == MatchStatus.ACCEPTED
    assert decision.session.state == SessionState.ACCEPTED
    assert decision.room_id == room_id_for("u1", "u2")
    assert _types(store, "u2") == [NotificationType.NEW_MATCH]
    with pytest.raises(ValidationFailedError):
        await session_service.create_match_from_suggestion(store, "u1", "u1", now=T0)


# ----------------------------------------------------------------------
# Direct calls
# ----------------------------------------------------------------------
@pytest.fixture()
def conversation(store, pair):
    with store.transaction():
        room = store.upsert_chat_room("u1", "u2", now=T0)
    return room.room_id


@pytest.mark.anyio
async def test_unanswered_call_times_out_and_notifies_the_caller(store, conversation):
    caller_socket = DummyWebSocket()
    await get_presence_registry().attach(ConnectionHandle(user_id="u1", websocket=caller_socket))

    session = await session_service.start_direct_call(store, "u1", "u2", SessionKind.VOICE, now=T0)
    assert session.state == SessionState.PROPOSED
    assert _types(store, "u2") == [NotificationType.CALL_REQUEST]

    assert await session_service.expire_unanswered_calls(store.db, now=T0 + timedelta(seconds=5)) == []
    ended = await session_service.expire_unanswered_calls(store.db, now=T0 + timedelta(seconds=8))

    assert ended == [session.id]
    session = store.require_session(session.id)
    assert session.state == SessionState.ENDED
    assert session.end_reason == EndReason.TIMEOUT.value
    assert session.ended_by == session_service.TIMEOUT_ACTOR
    assert _types(store, "u1") == [NotificationType.CALL_ENDED]
    assert "call:ended" in caller_socket.events()


@pytest.mark.anyio
async def test_call_opens_the_conversation_when_none_exists(store, pair):
    assert store.get_chat_room(room_id_for("u1", "u2")) is None

    session = await session_service.start_direct_call(store, "u1", "u2", SessionKind.VIDEO, now=T0)

    store.release_snapshot()
    assert session.state == SessionState.PROPOSED
    assert session.room_id == room_id_for("u1", "u2")
    room = store.get_chat_room(session.room_id)
    assert room is not None
    assert (room.participant1_id, room.participant2_id) == ("u1", "u2")
    assert _types(store, "u2") == [NotificationType.CALL_REQUEST]


@pytest.mark.anyio
async def test_only_one_open_call_per_pair(store, conversation):
    await session_service.start_direct_call(store, "u1", "u2", SessionKind.VOICE, now=T0)

    with pytest.raises(ConflictError):
        await session_service.start_direct_call(store, "u2", "u1", SessionKind.VOICE, now=T0)


@pytest.mark.anyio
async def test_callee_declines_a_call(store, conversation):
    session = await session_service.start_direct_call(store, "u1", "u2", SessionKind.VIDEO, now=T0)

    with pytest.raises(ForbiddenError):
        await session_service.call_response(store, session.id, "u1", CallResponse.ACCEPT, now=T0)
    declined = await session_service.call_response(
        store, session.id, "u2", CallResponse.DECLINE, now=T0 + timedelta(seconds=2)
    )

    assert declined.state == SessionState.ENDED
    assert declined.end_reason == EndReason.DECLINED.value
    assert _types(store, "u1") == [NotificationType.CALL_DECLINED]
    with pytest.raises(StaleError):
        await session_service.call_response(store, session.id, "u2", CallResponse.ACCEPT, now=T0)


@pytest.mark.anyio
async def test_callee_accepts_a_call(store, conversation):
    session = await session_service.start_direct_call(store, "u1", "u2", SessionKind.VIDEO, now=T0)

    accepted = await session_service.call_response(
        store, session.id, "u2", CallResponse.ACCEPT, now=T0 + timedelta(seconds=2)
    )

    assert accepted.state == SessionState.ACCEPTED
    assert [s.id for s in session_service.active_sessions(store, "u1")] == [session.id]
    assert _types(store, "u1") == [NotificationType.CALL_ACCEPTED]


# ----------------------------------------------------------------------
# Unmatch
# ----------------------------------------------------------------------
@pytest.mark.anyio
async def test_unmatch_tears_down_everything_between_the_pair(store, pair):
    decision = await session_service.create_match_from_suggestion(store, "u1", "u2", now=T0)
    with store.transaction():
        store.append_message(decision.room_id, "u2", content="hi", now=T0 + timedelta(seconds=1))

    result = await session_service.unmatch(store, "u1", "u2", now=T0 + timedelta(minutes=1))

    assert result == {
        "connectionRemoved": True,
        "matchesDeclined": 1,
        "sessionsEnded": 1,
        "messagesCleared": 1,
    }
    assert store.active_connection_between("u1", "u2") is None
    assert store.require_match(decision.match.id).status == MatchStatus.DECLINED
    session = store.require_session(decision.session.id)
    assert session.end_reason == EndReason.UNMATCHED.value
    assert store.get_messages_by_room(decision.room_id, limit=50) == []
    assert store.list_activity("u1", limit=1)[0].kind == ActivityKind.UNMATCH


@pytest.mark.anyio
async def test_unmatch_without_any_relation_is_not_found(store, pair):
    with pytest.raises(NotFoundError):
        await session_service.unmatch(store, "u1", "u2", now=T0)
