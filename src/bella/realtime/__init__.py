"""Realtime helpers for distributed websocket coordination."""

from .bus import ConversationBus, TypingTracker  # noqa: F401
from .connections import ConnectionHandle, safe_send_json  # noqa: F401
from .locks import PairLockManager, PairLockTimeout  # noqa: F401
from .managers import (  # noqa: F401
    get_conversation_bus,
    get_node_id,
    get_pair_locks,
    get_presence_registry,
    get_transport,
    shutdown_realtime,
    startup_realtime,
)
from .presence import PresenceRegistry  # noqa: F401

__all__ = [
    "ConnectionHandle",
    "ConversationBus",
    "PairLockManager",
    "PairLockTimeout",
    "PresenceRegistry",
    "TypingTracker",
    "get_conversation_bus",
    "get_node_id",
    "get_pair_locks",
    "get_presence_registry",
    "get_transport",
    "safe_send_json",
    "shutdown_realtime",
    "startup_realtime",
]
