"""Presence registry: which users have open signaling connections on this node."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Iterable, Set

from app.monitoring.metrics import (
    realtime_connections,
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
)

from .connections import ConnectionHandle
from .transport import USER_TOPIC, RedisTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, bool], Awaitable[None]]


class PresenceRegistry:
    """Map user ids to their open connections and deliver frames to users.

    A user whose last connection closes stays online for ``grace_seconds``
    so a quick reconnect does not flap their status.
    """

    def __init__(self, transport: RedisTransport, *, node_id: str, grace_seconds: float) -> None:
        self._transport = transport
        self._node_id = node_id
        self._grace = grace_seconds
        self._connections: Dict[str, Set[ConnectionHandle]] = defaultdict(set)
        self._offline_timers: Dict[str, asyncio.Task[None]] = {}
        self._hidden: Set[str] = set()
        self._listeners: list[StatusListener] = []
        self._lock = asyncio.Lock()
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        async def handle(message: dict[str, Any]) -> None:
            if message.get("origin") == self._node_id:
                return
            user_id = message.get("user_id")
            frame = message.get("frame")
            if not isinstance(user_id, str) or not isinstance(frame, dict):
                return
            await self._deliver_local(user_id, frame, skip_conversation=message.get("skip_conversation"))
            realtime_events_total.labels("user", "in", message.get("action", "deliver")).inc()

        try:
            self._subscription = await self._transport.subscribe(USER_TOPIC, handle)
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable; user fan-out will be limited to this instance",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None
            return
        realtime_subscriptions.labels("user", self._transport.backend).inc()

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            realtime_subscriptions.labels("user", self._transport.backend).dec()
            self._subscription = None
        for task in list(self._offline_timers.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._offline_timers.clear()

    def add_listener(self, listener: StatusListener) -> None:
        """Register a coroutine called with ``(user_id, online)`` on status changes."""

        if listener not in self._listeners:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------
    async def attach(self, handle: ConnectionHandle) -> bool:
        """Register a connection; returns True when the user just came online."""

        async with self._lock:
            bucket = self._connections[handle.user_id]
            reconnecting = self._cancel_offline_timer(handle.user_id)
            came_online = not bucket and not reconnecting
            bucket.add(handle)
        realtime_connections.labels("signaling").inc()
        if came_online:
            await self._notify(handle.user_id, True)
        return came_online

    async def detach(self, handle: ConnectionHandle) -> None:
        async with self._lock:
            bucket = self._connections.get(handle.user_id)
            if not bucket or handle not in bucket:
                return
            bucket.discard(handle)
            realtime_connections.labels("signaling").dec()
            if bucket:
                return
            self._connections.pop(handle.user_id, None)
            self._offline_timers[handle.user_id] = asyncio.create_task(
                self._expire_after_grace(handle.user_id),
                name=f"presence-grace-{handle.user_id}",
            )

    def _cancel_offline_timer(self, user_id: str) -> bool:
        task = self._offline_timers.pop(user_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _expire_after_grace(self, user_id: str) -> None:
        await asyncio.sleep(self._grace)
        async with self._lock:
            if self._offline_timers.get(user_id) is not asyncio.current_task():
                return
            self._offline_timers.pop(user_id, None)
            if self._connections.get(user_id):
                return
        await self._notify(user_id, False)

    async def _notify(self, user_id: str, online: bool) -> None:
        for listener in list(self._listeners):
            try:
                await listener(user_id, online)
            except Exception:
                logger.exception("Presence listener failed for user %s", user_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id)) or user_id in self._offline_timers

    def set_visibility(self, user_id: str, visible: bool) -> None:
        if visible:
            self._hidden.discard(user_id)
        else:
            self._hidden.add(user_id)

    def is_visible(self, user_id: str) -> bool:
        return user_id not in self._hidden

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def fanout_to_user(
        self,
        user_id: str,
        frame: dict[str, Any],
        *,
        skip_conversation: str | None = None,
        exclude: Iterable[ConnectionHandle] = (),
        publish: bool = True,
    ) -> int:
        """Send *frame* to every connection of *user_id*.

        Connections joined to ``skip_conversation`` are skipped because they
        already received the event through the conversation bus. Returns the
        number of local connections that accepted the frame.
        """

        delivered = await self._deliver_local(
            user_id, frame, skip_conversation=skip_conversation, exclude=exclude
        )
        if publish:
            await self._publish(
                "deliver",
                {
                    "action": "deliver",
                    "user_id": user_id,
                    "frame": frame,
                    "skip_conversation": skip_conversation,
                    "origin": self._node_id,
                },
            )
        return delivered

    async def _deliver_local(
        self,
        user_id: str,
        frame: dict[str, Any],
        *,
        skip_conversation: str | None = None,
        exclude: Iterable[ConnectionHandle] = (),
    ) -> int:
        excluded = set(exclude)
        targets = [
            handle
            for handle in list(self._connections.get(user_id, ()))
            if handle not in excluded
            and not (skip_conversation and skip_conversation in handle.conversations)
        ]
        delivered = 0
        for handle in targets:
            if await handle.send(frame):
                delivered += 1
        if targets and delivered == 0:
            logger.warning(
                "Dropped %s frame for user %s: all %d connections failed",
                frame.get("event"),
                user_id,
                len(targets),
            )
        return delivered

    async def _publish(self, action: str, payload: dict[str, Any]) -> None:
        if not self._transport.configured:
            return
        try:
            await self._transport.publish(USER_TOPIC, payload)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while delivering %s to a user; operating in local-only mode",
                    action,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels("user", self._transport.backend, "unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels("user", self._transport.backend, "error").inc()
            logger.exception("Unexpected error while publishing %s user event", action)
        else:
            self._publish_warning_logged = False
            realtime_events_total.labels("user", "out", action).inc()


__all__ = ["PresenceRegistry", "StatusListener"]
