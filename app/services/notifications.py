"""Notification fan-out: write-through to the store, then best-effort live delivery."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Any

from sqlalchemy.exc import OperationalError

from bella.realtime import get_presence_registry
from bella.signaling import build_frame

from app.config import get_settings
from app.core.errors import ConflictError
from app.models import Notification, NotificationType
from app.monitoring.metrics import notifications_delivered_total, notifications_total
from app.services.store import MatchmakingStore

logger = logging.getLogger(__name__)

settings = get_settings()

LIVE_EVENTS: dict[NotificationType, str] = {
    NotificationType.NEW_MATCH: "match:found",
    NotificationType.CALL_REQUEST: "call:incoming",
    NotificationType.CALL_ACCEPTED: "call:response",
    NotificationType.CALL_DECLINED: "call:response",
    NotificationType.CALL_ENDED: "call:ended",
}


def live_payload(notification: Notification) -> dict[str, Any]:
    return {
        **notification.data,
        "notificationId": notification.id,
        "type": notification.type.value,
    }


def _retry_delay(attempt: int) -> float:
    base = settings.notification_retry_base_delay
    return base * (2 ** (attempt - 1)) + random.uniform(0, base)


async def emit_notification(
    store: MatchmakingStore,
    recipient_id: str,
    type: NotificationType,
    data: dict[str, Any],
    *,
    match_id: str | None = None,
    session_id: str | None = None,
    skip_conversation: str | None = None,
    now: datetime | None = None,
) -> Notification | None:
    """Persist a notification and push it to the recipient's open connections.

    Returns ``None`` when the notification already existed or could not be
    written; neither case is an error for the caller's state transition.
    """

    attempts = max(settings.notification_write_retries, 0) + 1
    notification: Notification | None = None
    for attempt in range(1, attempts + 1):
        try:
            with store.transaction():
                notification = store.create_notification(
                    recipient_id,
                    type,
                    data,
                    match_id=match_id,
                    session_id=session_id,
                    now=now,
                )
            break
        except ConflictError:
            notifications_total.labels(type.value, "duplicate").inc()
            logger.debug(
                "Skipping duplicate %s notification for %s", type.value, recipient_id
            )
            return None
        except OperationalError:
            if attempt >= attempts:
                notifications_total.labels(type.value, "failed").inc()
                logger.exception(
                    "Giving up on %s notification for %s after %d attempts",
                    type.value,
                    recipient_id,
                    attempts,
                )
                return None
            delay = _retry_delay(attempt)
            logger.warning(
                "Transient store error writing %s notification; retrying in %.2fs",
                type.value,
                delay,
            )
            await asyncio.sleep(delay)

    if notification is None:
        return None
    notifications_total.labels(type.value, "stored").inc()
    await deliver_live(notification, skip_conversation=skip_conversation)
    return notification


async def deliver_live(notification: Notification, *, skip_conversation: str | None = None) -> int:
    registry = get_presence_registry()
    frame = build_frame(LIVE_EVENTS[notification.type], live_payload(notification))
    delivered = await registry.fanout_to_user(
        notification.recipient_id, frame, skip_conversation=skip_conversation
    )
    if delivered:
        notifications_delivered_total.labels(notification.type.value).inc()
    return delivered


__all__ = ["LIVE_EVENTS", "deliver_live", "emit_notification", "live_payload"]
