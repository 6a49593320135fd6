from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.core.errors import ForbiddenError, NotFoundError
from app.models import QueueStatus
from app.schemas import QueuePreferences
from app.services.waiting_queue import NOT_IN_QUEUE, WaitingQueue

T0 = datetime(2026, 10, 19, 12, 0, 0)


def _join(store, user_id: str, now: datetime, **prefs) -> None:
    with store.transaction():
        WaitingQueue(store).enqueue(user_id, QueuePreferences.model_validate(prefs), now=now)


def test_unverified_users_cannot_queue(store, make_user):
    make_user("u1", verified=False)

    with pytest.raises(ForbiddenError):
        _join(store, "u1", T0)
    assert store.get_queue_entry("u1") is None


def test_unknown_user_is_not_found(store):
    with pytest.raises(NotFoundError):
        _join(store, "ghost", T0)


def test_status_of_a_user_who_never_queued(store, make_user):
    make_user("u1")

    status = WaitingQueue(store).status("u1")

    assert status.state == NOT_IN_QUEUE
    assert status.position is None


def test_join_reports_position_and_total(store, make_user):
    for user_id in ("u1", "u2", "u3"):
        make_user(user_id)
    _join(store, "u1", T0)
    _join(store, "u2", T0 + timedelta(seconds=1))
    _join(store, "u3", T0 + timedelta(seconds=2))

    status = WaitingQueue(store).status("u2")

    assert status.state == QueueStatus.WAITING.value
    assert status.position == 2
    assert status.total_in_queue == 3


def test_rejoining_while_waiting_keeps_rank_and_updates_preferences(store, make_user):
    make_user("u1")
    _join(store, "u1", T0, interests=["chess"])
    _join(store, "u1", T0 + timedelta(seconds=30), interests=["film"])

    entry = store.get_queue_entry("u1")
    assert entry.enqueued_at == T0
    assert entry.last_seen_at == T0 + timedelta(seconds=30)
    assert entry.preferences["interests"] == ["film"]


def test_leave_is_idempotent(store, make_user):
    make_user("u1")
    _join(store, "u1", T0)
    queue = WaitingQueue(store)

    with store.transaction():
        assert queue.leave("u1", now=T0) is True
    with store.transaction():
        assert queue.leave("u1", now=T0) is False

    assert queue.status("u1").state == QueueStatus.LEFT.value
    with pytest.raises(NotFoundError):
        queue.heartbeat("u1")


def test_rejoin_after_leaving_gets_a_fresh_rank(store, make_user):
    make_user("u1")
    _join(store, "u1", T0)
    with store.transaction():
        WaitingQueue(store).leave("u1", now=T0)
    _join(store, "u1", T0 + timedelta(minutes=1))

    entry = store.get_queue_entry("u1")
    assert entry.status == QueueStatus.WAITING
    assert entry.enqueued_at == T0 + timedelta(minutes=1)
    assert entry.left_reason is None


def test_collect_stale_drops_silent_waiters(store, make_user):
    make_user("u1")
    make_user("u2")
    _join(store, "u1", T0)
    _join(store, "u2", T0)
    queue = WaitingQueue(store)
    with store.transaction():
        queue.heartbeat("u2", now=T0 + timedelta(seconds=60))

    with store.transaction():
        dropped = queue.collect_stale(now=T0 + timedelta(seconds=91))

    assert dropped == ["u1"]
    entry = store.get_queue_entry("u1")
    assert entry.status == QueueStatus.LEFT
    assert entry.left_reason == "stale"
    assert store.get_queue_entry("u2").status == QueueStatus.WAITING


def test_requeue_only_touches_matched_entries_unless_forced(store, make_user):
    make_user("u1")
    make_user("u2")
    _join(store, "u1", T0)
    _join(store, "u2", T0)
    queue = WaitingQueue(store)
    with store.transaction():
        store.transition_queue_entries(("u1",), QueueStatus.WAITING, QueueStatus.MATCHED, matched_at=T0)
        queue.leave("u2", now=T0)

    later = T0 + timedelta(minutes=5)
    with store.transaction():
        assert queue.requeue("u1", now=later) is True
        assert queue.requeue("u2", force=True, now=later) is False

    entry = store.get_queue_entry("u1")
    assert entry.status == QueueStatus.WAITING
    assert entry.enqueued_at == later


def test_update_preferences_requires_an_entry(store, make_user):
    make_user("u1")
    queue = WaitingQueue(store)

    with pytest.raises(NotFoundError):
        queue.update_preferences("u1", QueuePreferences())


def test_statistics_count_every_status(store, make_user):
    for user_id in ("u1", "u2", "u3"):
        make_user(user_id)
    for user_id in ("u1", "u2", "u3"):
        _join(store, user_id, T0)
    with store.transaction():
        WaitingQueue(store).leave("u3", now=T0)

    stats = WaitingQueue(store).statistics()

    assert (stats.waiting, stats.matched, stats.left) == (2, 0, 1)
    assert stats.average_wait_seconds is None
