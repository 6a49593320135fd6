"""Application service helpers."""

from .store import MatchmakingStore
from .waiting_queue import NOT_IN_QUEUE, WaitingQueue
from .notifications import emit_notification
from .matcher import run_tick

__all__ = [
    "MatchmakingStore",
    "NOT_IN_QUEUE",
    "WaitingQueue",
    "emit_notification",
    "run_tick",
]
