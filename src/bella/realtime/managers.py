"""Process-wide realtime singletons and their lifecycle."""

from __future__ import annotations

import asyncio
import logging
import uuid

from redis.exceptions import RedisError

from app.config import get_settings

from .bus import ConversationBus
from .locks import PairLockManager
from .presence import PresenceRegistry
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError

logger = logging.getLogger(__name__)

settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

transport = RedisTransport(
    BrokerConfig(
        redis_url=settings.realtime_redis_url,
        prefix=settings.realtime_namespace,
        node_id=_node_id,
    )
)

presence_registry = PresenceRegistry(
    transport,
    node_id=_node_id,
    grace_seconds=settings.presence_grace_seconds,
)
conversation_bus = ConversationBus(
    transport,
    node_id=_node_id,
    typing_ttl_seconds=settings.realtime_typing_ttl_seconds,
)
pair_locks = PairLockManager(
    transport,
    prefix=settings.realtime_namespace,
    timeout_seconds=settings.realtime_lock_timeout_seconds,
)


async def startup_realtime() -> None:
    if not transport.configured:
        logger.info("No realtime broker configured; running single-node")
        return
    try:
        await transport.start()
    except (TransportUnavailableError, OSError, RedisError):
        logger.warning(
            "Realtime backend unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return

    await asyncio.gather(presence_registry.start(), conversation_bus.start())


async def shutdown_realtime() -> None:
    await asyncio.gather(presence_registry.stop(), conversation_bus.stop())
    await transport.stop()


def get_node_id() -> str:
    return _node_id


def get_transport() -> RedisTransport:
    return transport


def get_presence_registry() -> PresenceRegistry:
    return presence_registry


def get_conversation_bus() -> ConversationBus:
    return conversation_bus


def get_pair_locks() -> PairLockManager:
    return pair_locks


__all__ = [
    "get_conversation_bus",
    "get_node_id",
    "get_pair_locks",
    "get_presence_registry",
    "get_transport",
    "shutdown_realtime",
    "startup_realtime",
]
