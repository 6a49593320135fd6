"""Background loop driving the matcher and the timeout sweeps."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.core.clock import utcnow
from app.database import get_db_session
from app.monitoring.metrics import scheduler_failures_total
from app.services.matcher import run_tick
from app.services.sessions import expire_proposals, expire_stalled_negotiations, expire_unanswered_calls
from app.services.store import MatchmakingStore
from app.services.waiting_queue import WaitingQueue

logger = logging.getLogger(__name__)

settings = get_settings()

Job = Callable[[Session, datetime], Awaitable[object]]


async def _collect_stale(db: Session, now: datetime) -> list[str]:
    store = MatchmakingStore(db)
    with store.transaction():
        return WaitingQueue(store).collect_stale(now=now)


async def _expire_proposals(db: Session, now: datetime) -> list[str]:
    return await expire_proposals(db, now=now)


async def _expire_calls(db: Session, now: datetime) -> list[str]:
    return await expire_unanswered_calls(db, now=now)


async def _expire_negotiations(db: Session, now: datetime) -> list[str]:
    return await expire_stalled_negotiations(db, now=now)


async def _match(db: Session, now: datetime) -> object:
    return await run_tick(db, now=now)


JOBS: tuple[tuple[str, Job], ...] = (
    ("queue_gc", _collect_stale),
    ("proposal_expiry", _expire_proposals),
    ("ring_timeout", _expire_calls),
    ("negotiation_timeout", _expire_negotiations),
    ("matcher", _match),
)


class MatchmakingScheduler:
    """Runs every job once per tick and tracks how long the store has been unreachable."""

    def __init__(self, *, interval: float, outage_grace: float) -> None:
        self._interval = interval
        self._outage_grace = outage_grace
        self._task: asyncio.Task[None] | None = None
        self._outage_since: float | None = None
        self._outage_reported = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def degraded(self) -> bool:
        """True once the store has been failing for longer than the grace window."""

        if self._outage_since is None:
            return False
        return time.monotonic() - self._outage_since >= self._outage_grace

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="matchmaking-scheduler")
        logger.info("Matchmaking scheduler started (tick %.3fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)

    async def run_once(self, *, now: datetime | None = None) -> dict[str, bool]:
        """Run each job in its own database session; returns which jobs succeeded."""

        now = now or utcnow()
        outcome: dict[str, bool] = {}
        store_failed = False
        for name, job in JOBS:
            try:
                with get_db_session() as db:
                    await job(db, now)
                outcome[name] = True
            except OperationalError:
                store_failed = True
                outcome[name] = False
                scheduler_failures_total.labels(name).inc()
                logger.warning("Scheduler job %s could not reach the store", name, exc_info=True)
            except Exception:
                outcome[name] = False
                scheduler_failures_total.labels(name).inc()
                logger.exception("Scheduler job %s failed", name)
        self._track_outage(store_failed)
        return outcome

    def _track_outage(self, failed: bool) -> None:
        if not failed:
            if self._outage_since is not None:
                logger.info("Store reachable again; scheduler recovered")
            self._outage_since = None
            self._outage_reported = False
            return
        if self._outage_since is None:
            self._outage_since = time.monotonic()
        if self.degraded and not self._outage_reported:
            logger.critical(
                "Store unreachable for more than %.0fs; matchmaking is degraded",
                self._outage_grace,
            )
            self._outage_reported = True


scheduler = MatchmakingScheduler(
    interval=settings.queue_tick_seconds,
    outage_grace=settings.store_outage_grace_seconds,
)


__all__ = ["JOBS", "MatchmakingScheduler", "scheduler"]
