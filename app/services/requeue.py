"""Return session participants to the waiting queue after a skip or an auto-requeue end."""

from __future__ import annotations

import logging
from datetime import datetime

from app.core.clock import utcnow
from app.models import CallSession
from app.services.matcher import run_tick
from app.services.store import MatchmakingStore
from app.services.waiting_queue import WaitingQueue

logger = logging.getLogger(__name__)


async def requeue_participants(
    store: MatchmakingStore,
    session: CallSession,
    *,
    force: bool = False,
    now: datetime | None = None,
) -> list[str]:
    """Requeue both participants with their stored preferences and ``enqueued_at = now``.

    A participant who explicitly left the queue stays out. Triggers a matcher
    tick when anyone was requeued.
    """

    now = now or utcnow()
    queue = WaitingQueue(store)
    participants = session.participants
    with store.transaction():
        requeued = [user_id for user_id in participants if queue.requeue(user_id, force=force, now=now)]
    if requeued:
        logger.info("Requeued %s after session %s", ", ".join(requeued), session.id)
        await run_tick(store.db, now=now)
    return requeued


__all__ = ["requeue_participants"]
