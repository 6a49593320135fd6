"""Matcher tick: pair compatible waiters and propose matches."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from bella.matching import Pairing, Waiter, pair_waiters
from bella.realtime import get_pair_locks

from app.config import get_settings
from app.core.clock import to_epoch_ms, utcnow
from app.core.errors import ConflictError, StaleError
from app.models import Match, MatchSource, NotificationType, QueueEntry, QueueStatus, UserRef
from app.monitoring.metrics import matcher_tick_duration_seconds, matches_proposed_total, queue_waiting
from app.services.notifications import emit_notification
from app.services.store import MatchmakingStore

logger = logging.getLogger(__name__)

settings = get_settings()


def waiter_from_entry(entry: QueueEntry, user: UserRef) -> Waiter:
    return Waiter.from_preferences(
        entry.user_id,
        float(to_epoch_ms(entry.enqueued_at) or 0),
        entry.preferences or {},
        age=user.age,
        gender=user.gender.value if user.gender is not None else None,
        profile_interests=user.interests or (),
        profile_location=user.location,
    )


def new_match_payload(match: Match, partner: UserRef | None, partner_id: str) -> dict[str, Any]:
    return {
        "matchId": match.id,
        "partnerId": partner_id,
        "partnerName": partner.name if partner is not None else partner_id,
        "partnerProfilePicture": partner.profile_picture_url if partner is not None else None,
        "matchScore": round(match.total_score, 4),
        "sessionId": None,
        "roomId": None,
        "matchActionTaken": False,
    }


async def run_tick(db: Session, *, now: datetime | None = None) -> list[Match]:
    """Run one matcher pass over the WAITING entries; returns the proposed matches."""

    now = now or utcnow()
    started = time.perf_counter()
    store = MatchmakingStore(db)

    entries = store.waiting_entries()
    queue_waiting.set(len(entries))
    if len(entries) < 2:
        store.release_snapshot()
        matcher_tick_duration_seconds.observe(time.perf_counter() - started)
        return []

    users = store.get_users(entry.user_id for entry in entries)
    busy = store.busy_user_ids(users.keys())
    waiters = [
        waiter_from_entry(entry, users[entry.user_id])
        for entry in entries
        if entry.user_id in users
        and users[entry.user_id].is_photo_verified
        and entry.user_id not in busy
    ]
    cooldown_start = now - timedelta(hours=settings.decline_cooldown_hours)
    excluded = store.cooled_pairs((waiter.user_id for waiter in waiters), cooldown_start)
    store.release_snapshot()

    proposed: list[Match] = []
    for pairing in pair_waiters(waiters, excluded_pairs=excluded):
        match = await propose(store, pairing, now=now, users=users)
        if match is not None:
            proposed.append(match)

    elapsed = time.perf_counter() - started
    matcher_tick_duration_seconds.observe(elapsed)
    if proposed:
        logger.info("Matcher tick proposed %d matches in %.3fs", len(proposed), elapsed)
    return proposed


async def propose(
    store: MatchmakingStore,
    pairing: Pairing,
    *,
    now: datetime,
    users: dict[str, UserRef] | None = None,
) -> Match | None:
    first, second = pairing.user_ids
    async with get_pair_locks().hold(first, second):
        try:
            with store.transaction():
                store.transition_queue_entries(
                    (first, second),
                    QueueStatus.WAITING,
                    QueueStatus.MATCHED,
                    matched_at=now,
                    attempts=QueueEntry.attempts + 1,
                )
                match = store.create_match(
                    first,
                    second,
                    pairing.score,
                    source=MatchSource.QUEUE,
                    ttl=timedelta(milliseconds=settings.proposal_ttl_ms),
                    now=now,
                )
        except (StaleError, ConflictError) as exc:
            logger.info("Skipped pairing %s/%s: %s", first, second, exc.detail)
            return None

    matches_proposed_total.labels(MatchSource.QUEUE.value).inc()
    logger.info(
        "Proposed match %s between %s and %s (score %.3f)",
        match.id,
        match.user1_id,
        match.user2_id,
        match.total_score,
    )

    users = users or store.get_users((first, second))
    for recipient, partner_id in ((first, second), (second, first)):
        await emit_notification(
            store,
            recipient,
            NotificationType.NEW_MATCH,
            new_match_payload(match, users.get(partner_id), partner_id),
            match_id=match.id,
            now=now,
        )
    return match


__all__ = ["new_match_payload", "propose", "run_tick", "waiter_from_entry"]
