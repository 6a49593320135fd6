"""Cross-node pub/sub transport for realtime events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

_PUBLISH_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]

# Topic names shared by the realtime registries
PRESENCE_TOPIC = "presence"
CONVERSATION_TOPIC = "conversation"
USER_TOPIC = "user"


@dataclass(slots=True)
class BrokerConfig:
    """Configuration used for wiring the realtime transport layer."""

    redis_url: str | None
    prefix: str = "bella.realtime"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when publishing to a broker that is not configured or not reachable."""


class Subscription:
    """Handle returned when subscribing to a broker topic."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


@dataclass(slots=True)
class _ChannelState:
    """Bookkeeping for one subscribed channel so it can be re-attached after a restart."""

    topic: str
    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


class RedisTransport:
    """Redis pub/sub with automatic reader recovery.

    When no Redis URL is configured every call raises
    :class:`TransportUnavailableError` and callers fall back to local-only
    delivery.
    """

    backend = "redis"

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._states: list[_ChannelState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def configured(self) -> bool:
        return bool(self._config.redis_url)

    @property
    def connected(self) -> bool:
        return self._redis is not None

    @property
    def client(self) -> Any | None:
        return self._redis

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect()

    async def stop(self) -> None:
        for state in list(self._states):
            if state.subscription is not None:
                await state.subscription.close()
        self._states.clear()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def _connect(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except (OSError, RedisError):
            logger.exception("Failed to connect to Redis realtime backend")
            await client.close()
            raise
        self._redis = client

    async def _pause_state(self, state: _ChannelState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_state(self, state: _ChannelState) -> None:
        state.active = False
        await self._pause_state(state)
        if state in self._states:
            self._states.remove(state)

    async def _restart(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        async with self._recovery_lock:
            for state in list(self._states):
                await self._pause_state(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [item for item in self._states if item.active]:
                try:
                    await self._attach_reader(state)
                except Exception:
                    logger.exception("Failed to restore Redis subscription", extra={"channel": state.channel})
                    raise

        realtime_transport_restarts_total.labels(self.backend, reason).inc()
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._states)},
        )

    async def _attach_reader(self, state: _ChannelState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _PUBLISH_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Discarded malformed realtime payload", extra={"channel": state.channel})
                        continue
                    await state.handler(payload)
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(state.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(reader(), name=f"realtime-redis-{state.channel}")
        state.task = task
        if state.subscription is not None:
            state.subscription._task = task
        task.add_done_callback(lambda finished: asyncio.create_task(self._on_reader_done(state, finished)))

    async def _on_reader_done(self, state: _ChannelState, task: asyncio.Task[Any]) -> None:
        state.task = None
        state.pubsub = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Redis subscription reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning(
                "Redis subscription reader exited unexpectedly; scheduling recovery",
                extra={"channel": state.channel},
            )
        self._trigger_recovery("reader_stopped")

    def _trigger_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(self._recovery_runner(reason), name="realtime-redis-recovery")

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY)
            await asyncio.sleep(delay)
            try:
                await self._restart(reason)
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis realtime recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._recovery_task = None

    def _channel(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if not self._config.redis_url:
            raise TransportUnavailableError("Redis backend is not configured")
        if self._redis is None:
            try:
                await self.start()
            except (OSError, RedisError) as exc:
                raise TransportUnavailableError("Redis backend is unavailable") from exc
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        channel = self._channel(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _PUBLISH_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload via Redis", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if not self._config.redis_url:
            raise TransportUnavailableError("Redis backend is not configured")
        if self._redis is None:
            try:
                await self.start()
            except (OSError, RedisError) as exc:
                raise TransportUnavailableError("Redis backend is unavailable") from exc
        channel = self._channel(topic)
        state = _ChannelState(topic=topic, channel=channel, handler=handler)

        async def cleanup() -> None:
            await self._close_state(state)

        subscription = Subscription(channel, cleanup, None)
        state.subscription = subscription
        self._states.append(state)
        try:
            await self._attach_reader(state)
        except Exception as exc:
            await self._close_state(state)
            self._trigger_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        return subscription


__all__ = [
    "BrokerConfig",
    "CONVERSATION_TOPIC",
    "MessageHandler",
    "PRESENCE_TOPIC",
    "RedisTransport",
    "Subscription",
    "TransportUnavailableError",
    "USER_TOPIC",
]
