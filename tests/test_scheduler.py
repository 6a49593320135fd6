from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.models import Gender, MatchStatus, QueueStatus
from app.monitoring.metrics import scheduler_failures_total
from app.monitoring.registry import MetricsRegistry
from app.schemas import QueuePreferences
from app.services import scheduler as scheduler_module
from app.services.scheduler import MatchmakingScheduler
from app.services.waiting_queue import WaitingQueue

T0 = datetime(2026, 10, 19, 12, 0, 0)


def _join(store, user_id: str, now: datetime) -> None:
    with store.transaction():
        WaitingQueue(store).enqueue(user_id, QueuePreferences(), now=now)


@pytest.mark.anyio
async def test_run_once_drives_matching_and_sweeps(store, make_user):
    make_user("u1", gender=Gender.MAN)
    make_user("u2", gender=Gender.WOMAN)
    make_user("u3")
    _join(store, "u1", T0)
    _join(store, "u2", T0)
    _join(store, "u3", T0 - timedelta(minutes=5))
    store.release_snapshot()

    outcome = await MatchmakingScheduler(interval=0.5, outage_grace=30).run_once(now=T0)

    assert all(outcome.values())
    assert list(outcome) == ["queue_gc", "proposal_expiry", "ring_timeout", "negotiation_timeout", "matcher"]
    store.release_snapshot()
    assert store.get_queue_entry("u3").status == QueueStatus.LEFT
    [match] = store.pending_matches_for("u1")
    assert match.status == MatchStatus.PENDING

    await MatchmakingScheduler(interval=0.5, outage_grace=30).run_once(now=T0 + timedelta(minutes=3))
    store.release_snapshot()
    assert store.require_match(match.id).status == MatchStatus.EXPIRED


@pytest.mark.anyio
async def test_store_outage_marks_scheduler_degraded(monkeypatch, caplog):
    async def unreachable(db, now):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(scheduler_module, "JOBS", (("matcher", unreachable),))
    scheduler = MatchmakingScheduler(interval=0.5, outage_grace=0)
    before = scheduler_failures_total.value("matcher")

    # the scheduler logger does not propagate to the root handler
    scheduler_logger = logging.getLogger("app.services.scheduler")
    scheduler_logger.addHandler(caplog.handler)
    try:
        outcome = await scheduler.run_once(now=T0)
    finally:
        scheduler_logger.removeHandler(caplog.handler)

    assert outcome == {"matcher": False}
    assert scheduler.degraded
    assert scheduler_failures_total.value("matcher") == before + 1
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    monkeypatch.setattr(scheduler_module, "JOBS", ())
    await scheduler.run_once(now=T0)
    assert not scheduler.degraded


@pytest.mark.anyio
async def test_unexpected_job_error_does_not_stop_other_jobs(monkeypatch):
    ran: list[str] = []

    async def broken(db, now):
        raise RuntimeError("bug")

    async def fine(db, now):
        ran.append("fine")

    monkeypatch.setattr(scheduler_module, "JOBS", (("broken", broken), ("fine", fine)))
    scheduler = MatchmakingScheduler(interval=0.5, outage_grace=0)

    outcome = await scheduler.run_once(now=T0)

    assert outcome == {"broken": False, "fine": True}
    assert ran == ["fine"]
    assert not scheduler.degraded


def test_registry_renders_histogram_buckets():
    registry = MetricsRegistry()
    histogram = registry.histogram("tick_seconds", "Tick duration.", buckets=(0.1, 1.0))
    counter = registry.counter("frames_total", "Frames.", label_names=("event",))

    histogram.observe(0.05)
    histogram.observe(0.5)
    counter.labels("ping").inc()

    rendered = registry.render()
    assert 'tick_seconds_bucket{le="0.1"} 1' in rendered
    assert 'tick_seconds_bucket{le="1"} 2' in rendered
    assert 'tick_seconds_bucket{le="+Inf"} 2' in rendered
    assert "tick_seconds_count 2" in rendered
    assert 'frames_total{event="ping"} 1' in rendered
    with pytest.raises(ValueError):
        counter.inc()
