"""Compare-and-set and uniqueness rules of the matchmaking store."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.core.errors import ActiveSessionExistsError, ConflictError, NotFoundError, StaleError
from app.models import (
    MatchStatus,
    NotificationType,
    QueueStatus,
    SessionKind,
    SessionState,
    canonical_pair,
    room_id_for,
)
from app.schemas import QueuePreferences
from app.services.waiting_queue import WaitingQueue

T0 = datetime(2026, 10, 19, 12, 0, 0)


def test_room_id_is_deterministic_for_the_unordered_pair():
    assert room_id_for("u1", "u2") == room_id_for("u2", "u1")
    assert room_id_for("u1", "u2") != room_id_for("u1", "u3")
    assert canonical_pair("zed", "amy") == ("amy", "zed")


def test_only_one_pending_match_per_pair(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        match = store.create_match("u2", "u1", 0.7, ttl=timedelta(minutes=2), now=T0)
    assert (match.user1_id, match.user2_id) == ("u1", "u2")
    assert match.expires_at == T0 + timedelta(minutes=2)

    with pytest.raises(ConflictError):
        with store.transaction():
            store.create_match("u1", "u2", 0.5, now=T0)


def test_declined_match_frees_the_pending_slot(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        match = store.create_match("u1", "u2", 0.7, now=T0)
        store.transition_match(match.id, MatchStatus.PENDING, MatchStatus.DECLINED, responded_at=T0)
    with store.transaction():
        again = store.create_match("u1", "u2", 0.7, now=T0)
    assert again.id != match.id
    assert store.find_pending_match("u2", "u1").id == again.id


def test_transition_match_is_compare_and_set(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        match = store.create_match("u1", "u2", 0.7, now=T0)
        store.transition_match(match.id, MatchStatus.PENDING, MatchStatus.ACCEPTED)

    with pytest.raises(StaleError):
        store.transition_match(match.id, MatchStatus.PENDING, MatchStatus.DECLINED)
    with pytest.raises(NotFoundError):
        store.transition_match("missing", MatchStatus.PENDING, MatchStatus.DECLINED)


def test_record_acceptance_is_idempotent(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        match = store.create_match("u1", "u2", 0.7, now=T0)
        assert store.record_acceptance(match, "u1", now=T0) is True
        assert store.record_acceptance(match, "u1", now=T0) is False
    assert match.accepted_by("u1")
    assert not match.accepted_by("u2")


def test_user_can_hold_only_one_active_session(store, make_user):
    for user_id in ("u1", "u2", "u3"):
        make_user(user_id)
    with store.transaction():
        proposed = store.create_session("u1", "u3", SessionKind.VOICE, now=T0)
        first = store.create_session("u1", "u2", SessionKind.VIDEO, state=SessionState.ACCEPTED, now=T0)
    assert store.busy_user_ids() == {"u1", "u2"}
    assert store.active_session_for("u2").id == first.id

    with pytest.raises(ActiveSessionExistsError):
        with store.transaction():
            store.create_session("u1", "u3", SessionKind.VIDEO, state=SessionState.ACCEPTED, now=T0)

    with pytest.raises(ActiveSessionExistsError):
        with store.transaction():
            store.transition_session(proposed.id, SessionState.PROPOSED, SessionState.ACCEPTED, now=T0)

    with store.transaction():
        store.transition_session(first.id, SessionState.ACCEPTED, SessionState.ENDED, now=T0, ended_by="u1")
    assert store.busy_user_ids() == set()

    with store.transaction():
        accepted = store.transition_session(proposed.id, SessionState.PROPOSED, SessionState.ACCEPTED, now=T0)
    assert accepted.state == SessionState.ACCEPTED
    assert accepted.accepted_at == T0


def test_transition_session_rejects_stale_state(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        session = store.create_session("u1", "u2", SessionKind.VOICE, now=T0)
        store.transition_session(session.id, SessionState.PROPOSED, SessionState.ENDED, now=T0)

    with pytest.raises(StaleError):
        store.transition_session(session.id, SessionState.PROPOSED, SessionState.ACCEPTED, now=T0)


def test_queue_transition_moves_both_entries_or_neither(store, make_user):
    make_user("u1")
    make_user("u2")
    queue = WaitingQueue(store)
    with store.transaction():
        queue.enqueue("u1", QueuePreferences(), now=T0)
        queue.enqueue("u2", QueuePreferences(), now=T0)
        queue.leave("u2", now=T0)

    with pytest.raises(StaleError):
        with store.transaction():
            store.transition_queue_entries(("u1", "u2"), QueueStatus.WAITING, QueueStatus.MATCHED)

    assert store.get_queue_entry("u1").status == QueueStatus.WAITING


def test_message_timestamps_never_go_backwards(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        room = store.upsert_chat_room("u2", "u1", now=T0)
        first = store.append_message(room.room_id, "u1", content="A", now=T0 + timedelta(seconds=5))
        second = store.append_message(room.room_id, "u2", content="B", now=T0)

    assert second.sent_at >= first.sent_at
    page = store.get_messages_by_room(room.room_id, limit=50)
    assert [message.content for message in page] == ["A", "B"]


def test_messages_page_from_the_newest(store, make_user):
    make_user("u1")
    make_user("u2")
    with store.transaction():
        room = store.upsert_chat_room("u1", "u2", now=T0)
        for index in range(5):
            store.append_message(room.room_id, "u1", content=str(index), now=T0 + timedelta(seconds=index))

    assert [m.content for m in store.get_messages_by_room(room.room_id, limit=2)] == ["3", "4"]
    assert [m.content for m in store.get_messages_by_room(room.room_id, limit=2, offset=2)] == ["1", "2"]


def test_notification_dedupe_key(store, make_user):
    make_user("u1")
    with store.transaction():
        store.create_notification("u1", NotificationType.NEW_MATCH, {}, match_id="m1", now=T0)
    with pytest.raises(ConflictError):
        with store.transaction():
            store.create_notification("u1", NotificationType.NEW_MATCH, {}, match_id="m1", now=T0)
    with store.transaction():
        store.create_notification("u1", NotificationType.CALL_DECLINED, {}, match_id="m1", now=T0)

    assert len(store.list_notifications("u1", limit=10)) == 2
