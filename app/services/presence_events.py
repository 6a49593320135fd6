"""Push ``presence`` frames to a user's conversation partners when they come and go."""

from __future__ import annotations

import logging

from bella.realtime import PresenceRegistry
from bella.signaling import build_frame

from app.core.clock import to_epoch_ms, utcnow
from app.database import get_db_session
from app.services.store import MatchmakingStore

logger = logging.getLogger(__name__)


def partner_ids(store: MatchmakingStore, user_id: str) -> list[str]:
    return sorted({room.other(user_id) for room in store.rooms_for_user(user_id)})


def presence_listener(registry: PresenceRegistry):
    """Build the status listener registered on *registry* at startup."""

    async def on_status(user_id: str, online: bool) -> None:
        with get_db_session() as db:
            store = MatchmakingStore(db)
            user = store.get_user(user_id)
            if user is None:
                return
            if not user.show_online_status or not registry.is_visible(user_id):
                return
            partners = partner_ids(store, user_id)
        frame = build_frame(
            "presence",
            {"userId": user_id, "online": online, "at": to_epoch_ms(utcnow())},
        )
        for partner_id in partners:
            await registry.fanout_to_user(partner_id, frame)
        logger.debug("Presence of %s (%s) sent to %d partners", user_id, online, len(partners))

    return on_status


__all__ = ["partner_ids", "presence_listener"]
