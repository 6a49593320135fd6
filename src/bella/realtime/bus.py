"""Conversation bus: per-conversation rooms with ordered fan-out."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Dict, Mapping, Set

from app.monitoring.metrics import (
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
)

from ..signaling.frames import conversation_frame
from .connections import ConnectionHandle
from .transport import CONVERSATION_TOPIC, RedisTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)


class TypingTracker:
    """Who is typing in which conversation; entries lapse after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float) -> None:
        self._ttl = ttl_seconds
        self._entries: Dict[str, Dict[str, float]] = defaultdict(dict)

    @property
    def ttl(self) -> float:
        return self._ttl

    def _prune(self, conversation_id: str, now: float) -> None:
        bucket = self._entries.get(conversation_id)
        if not bucket:
            return
        for user_id in [user for user, ts in bucket.items() if now - ts > self._ttl]:
            bucket.pop(user_id, None)
        if not bucket:
            self._entries.pop(conversation_id, None)

    def set(self, conversation_id: str, user_id: str, typing: bool) -> bool:
        """Record a typing change; returns True when the visible state changed."""

        now = time.monotonic()
        self._prune(conversation_id, now)
        bucket = self._entries.setdefault(conversation_id, {})
        was_typing = user_id in bucket
        if typing:
            bucket[user_id] = now
        else:
            bucket.pop(user_id, None)
        if not bucket:
            self._entries.pop(conversation_id, None)
        return was_typing != typing

    def typing_users(self, conversation_id: str) -> list[str]:
        self._prune(conversation_id, time.monotonic())
        return sorted(self._entries.get(conversation_id, {}))

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return user_id in self.typing_users(conversation_id)


class ConversationBus:
    """Deliver conversation events to every joined connection except the sender.

    Deliveries for one conversation are serialized so each subscriber sees
    events in the order they were published on this node.
    """

    def __init__(self, transport: RedisTransport, *, node_id: str, typing_ttl_seconds: float) -> None:
        self._transport = transport
        self._node_id = node_id
        self._members: Dict[str, Set[ConnectionHandle]] = defaultdict(set)
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()
        self._typing = TypingTracker(typing_ttl_seconds)
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False

    async def start(self) -> None:
        async def handle(message: dict[str, Any]) -> None:
            if message.get("origin") == self._node_id:
                return
            conversation_id = message.get("conversation_id")
            frame = message.get("frame")
            if not isinstance(conversation_id, str) or not isinstance(frame, dict):
                return
            await self._deliver(conversation_id, frame, sender=None)
            realtime_events_total.labels("conversation", "in", message.get("action", "event")).inc()

        try:
            self._subscription = await self._transport.subscribe(CONVERSATION_TOPIC, handle)
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable; conversation events will be limited to this instance",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None
            return
        realtime_subscriptions.labels("conversation", self._transport.backend).inc()

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            realtime_subscriptions.labels("conversation", self._transport.backend).dec()
            self._subscription = None

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    async def join(self, handle: ConnectionHandle, conversation_id: str) -> bool:
        async with self._lock:
            bucket = self._members[conversation_id]
            if handle in bucket:
                return False
            bucket.add(handle)
            handle.conversations.add(conversation_id)
            return True

    async def leave(self, handle: ConnectionHandle, conversation_id: str) -> bool:
        async with self._lock:
            bucket = self._members.get(conversation_id)
            if not bucket or handle not in bucket:
                handle.conversations.discard(conversation_id)
                return False
            bucket.discard(handle)
            handle.conversations.discard(conversation_id)
            if not bucket:
                self._members.pop(conversation_id, None)
                self._room_locks.pop(conversation_id, None)
            still_joined = any(other.user_id == handle.user_id for other in bucket)
        if not still_joined and self._typing.is_typing(conversation_id, handle.user_id):
            await self.set_typing(handle, conversation_id, False)
        return True

    async def leave_all(self, handle: ConnectionHandle) -> list[str]:
        left: list[str] = []
        for conversation_id in sorted(handle.conversations):
            if await self.leave(handle, conversation_id):
                left.append(conversation_id)
        return left

    def members(self, conversation_id: str) -> set[ConnectionHandle]:
        return set(self._members.get(conversation_id, ()))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def publish(
        self,
        conversation_id: str,
        kind: str,
        data: Mapping[str, Any],
        *,
        sender: ConnectionHandle | None = None,
    ) -> int:
        """Fan an event out to the conversation; returns local deliveries."""

        frame = conversation_frame(kind, {"conversationId": conversation_id, **data})
        delivered = await self._deliver(conversation_id, frame, sender=sender)
        await self._publish_remote(
            kind,
            {
                "action": kind,
                "conversation_id": conversation_id,
                "frame": frame,
                "origin": self._node_id,
            },
        )
        return delivered

    async def set_typing(self, handle: ConnectionHandle, conversation_id: str, typing: bool) -> bool:
        if not self._typing.set(conversation_id, handle.user_id, typing):
            return False
        kind = "typing-start" if typing else "typing-stop"
        await self.publish(conversation_id, kind, {"userId": handle.user_id}, sender=handle)
        return True

    def typing_users(self, conversation_id: str) -> list[str]:
        return self._typing.typing_users(conversation_id)

    async def _deliver(
        self, conversation_id: str, frame: dict[str, Any], *, sender: ConnectionHandle | None
    ) -> int:
        lock = self._room_locks.setdefault(conversation_id, asyncio.Lock())
        delivered = 0
        async with lock:
            for handle in list(self._members.get(conversation_id, ())):
                if handle is sender:
                    continue
                if await handle.send(frame):
                    delivered += 1
        return delivered

    async def _publish_remote(self, action: str, payload: dict[str, Any]) -> None:
        if not self._transport.configured:
            return
        try:
            await self._transport.publish(CONVERSATION_TOPIC, payload)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while broadcasting %s event; operating in local-only mode",
                    action,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels("conversation", self._transport.backend, "unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels("conversation", self._transport.backend, "error").inc()
            logger.exception("Unexpected error while broadcasting %s event", action)
        else:
            self._publish_warning_logged = False
            realtime_events_total.labels("conversation", "out", action).inc()


__all__ = ["ConversationBus", "TypingTracker"]
