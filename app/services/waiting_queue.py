"""Waiting queue operations.

Each user owns a single ``queue_entries`` row whose status moves between
WAITING, MATCHED and LEFT; rejoining reuses the row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select

from app.config import get_settings
from app.core.clock import utcnow
from app.core.errors import ForbiddenError, NotFoundError
from app.models import QueueEntry, QueueStatus
from app.monitoring.metrics import queue_operations_total
from app.schemas import QueuePreferences, QueueStatistics, QueueStatusRead
from app.services.store import MatchmakingStore

logger = logging.getLogger(__name__)

settings = get_settings()

NOT_IN_QUEUE = "NOT_IN_QUEUE"


class WaitingQueue:
    def __init__(self, store: MatchmakingStore) -> None:
        self.store = store

    @property
    def db(self):
        return self.store.db

    def enqueue(
        self, user_id: str, preferences: QueuePreferences, *, now: datetime | None = None
    ) -> QueueEntry:
        """Put *user_id* in the queue; rejoining while WAITING keeps the original rank."""

        user = self.store.require_user(user_id)
        if not user.is_photo_verified:
            raise ForbiddenError("Photo verification is required to join the queue")
        now = now or utcnow()
        stored = preferences.to_storage()
        entry = self.store.get_queue_entry(user_id)
        if entry is None:
            entry = QueueEntry(
                user_id=user_id,
                status=QueueStatus.WAITING,
                preferences=stored,
                enqueued_at=now,
                last_seen_at=now,
            )
            self.db.add(entry)
        elif entry.status == QueueStatus.WAITING:
            entry.preferences = stored
            entry.last_seen_at = now
        else:
            if entry.status == QueueStatus.LEFT:
                entry.attempts = 0
            entry.status = QueueStatus.WAITING
            entry.preferences = stored
            entry.enqueued_at = now
            entry.last_seen_at = now
            entry.left_at = None
            entry.left_reason = None
        self.store.flush(detail="User is already queued")
        queue_operations_total.labels("join").inc()
        logger.info("User %s joined the waiting queue", user_id)
        return entry

    def leave(self, user_id: str, *, reason: str = "left", now: datetime | None = None) -> bool:
        """Mark the entry LEFT; returns ``False`` when there was nothing to leave."""

        entry = self.store.get_queue_entry(user_id)
        if entry is None or entry.status == QueueStatus.LEFT:
            return False
        entry.status = QueueStatus.LEFT
        entry.left_at = now or utcnow()
        entry.left_reason = reason
        self.db.flush()
        queue_operations_total.labels("leave" if reason == "left" else reason).inc()
        logger.info("User %s left the waiting queue (%s)", user_id, reason)
        return True

    def heartbeat(self, user_id: str, *, now: datetime | None = None) -> QueueEntry:
        entry = self.store.get_queue_entry(user_id)
        if entry is None or entry.status == QueueStatus.LEFT:
            raise NotFoundError("Not in the queue")
        entry.last_seen_at = now or utcnow()
        self.db.flush()
        return entry

    def update_preferences(
        self, user_id: str, preferences: QueuePreferences, *, now: datetime | None = None
    ) -> QueueEntry:
        entry = self.store.get_queue_entry(user_id)
        if entry is None or entry.status == QueueStatus.LEFT:
            raise NotFoundError("Not in the queue")
        entry.preferences = preferences.to_storage()
        entry.last_seen_at = now or utcnow()
        self.db.flush()
        return entry

    def position(self, entry: QueueEntry) -> int:
        ahead = self.db.execute(
            select(func.count()).where(
                QueueEntry.status == QueueStatus.WAITING,
                or_(
                    QueueEntry.enqueued_at < entry.enqueued_at,
                    and_(QueueEntry.enqueued_at == entry.enqueued_at, QueueEntry.id < entry.id),
                ),
            )
        ).scalar_one()
        return int(ahead) + 1

    def estimated_wait_seconds(self) -> int | None:
        samples = self.store.recent_wait_durations(settings.wait_estimate_sample_size)
        if not samples:
            return None
        return int(round(sum(samples) / len(samples)))

    def status(self, user_id: str) -> QueueStatusRead:
        counts = self.store.count_queue_by_status()
        total = counts[QueueStatus.WAITING]
        entry = self.store.get_queue_entry(user_id)
        if entry is None:
            return QueueStatusRead(state=NOT_IN_QUEUE, total_in_queue=total)
        preferences = QueuePreferences.model_validate(entry.preferences or {})
        if entry.status != QueueStatus.WAITING:
            return QueueStatusRead(
                state=entry.status.value,
                total_in_queue=total,
                attempts=entry.attempts,
                enqueued_at=entry.enqueued_at,
                preferences=preferences,
            )
        return QueueStatusRead(
            state=entry.status.value,
            position=self.position(entry),
            total_in_queue=total,
            estimated_wait_time=self.estimated_wait_seconds(),
            attempts=entry.attempts,
            enqueued_at=entry.enqueued_at,
            preferences=preferences,
        )

    def statistics(self) -> QueueStatistics:
        counts = self.store.count_queue_by_status()
        return QueueStatistics(
            waiting=counts[QueueStatus.WAITING],
            matched=counts[QueueStatus.MATCHED],
            left=counts[QueueStatus.LEFT],
            average_wait_seconds=self.estimated_wait_seconds(),
        )

    def collect_stale(self, *, now: datetime | None = None) -> list[str]:
        """Drop WAITING entries whose heartbeat is older than the configured window."""

        now = now or utcnow()
        cutoff = now - timedelta(milliseconds=settings.queue_heartbeat_ms)
        stale = self.db.execute(
            select(QueueEntry).where(
                QueueEntry.status == QueueStatus.WAITING, QueueEntry.last_seen_at < cutoff
            )
        ).scalars().all()
        dropped: list[str] = []
        for entry in stale:
            entry.status = QueueStatus.LEFT
            entry.left_at = now
            entry.left_reason = "stale"
            dropped.append(entry.user_id)
        if dropped:
            self.db.flush()
            queue_operations_total.labels("stale").inc(len(dropped))
            logger.info("Dropped %d stale queue entries", len(dropped))
        return dropped

    def requeue(
        self,
        user_id: str,
        *,
        force: bool = False,
        touch: bool = True,
        now: datetime | None = None,
    ) -> bool:
        """Return a user to WAITING with their stored preferences and a fresh rank.

        Entries that were matched are always requeued; with ``force`` any
        entry that has not explicitly left is requeued as well.
        """

        entry = self.store.get_queue_entry(user_id)
        if entry is None:
            return False
        if entry.status == QueueStatus.LEFT:
            return False
        if entry.status != QueueStatus.MATCHED and not force:
            return False
        now = now or utcnow()
        entry.status = QueueStatus.WAITING
        entry.enqueued_at = now
        if touch:
            entry.last_seen_at = now
        self.db.flush()
        queue_operations_total.labels("requeue").inc()
        logger.info("User %s requeued", user_id)
        return True


__all__ = ["NOT_IN_QUEUE", "WaitingQueue"]
