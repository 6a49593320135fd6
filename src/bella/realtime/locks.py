"""Pair locks serializing match creation and session transitions for two users."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Dict

from redis.exceptions import LockError, RedisError

from .transport import RedisTransport

logger = logging.getLogger(__name__)


class PairLockTimeout(RuntimeError):
    """Raised when a pair lock could not be acquired in time."""


def pair_lock_key(first: str, second: str) -> str:
    low, high = (first, second) if first < second else (second, first)
    return f"{low}:{high}"


class PairLockManager:
    """Hold a lock keyed by ``min(u1,u2):max(u1,u2)``.

    Uses a Redis lock when the transport is connected so every node agrees,
    and a process-local asyncio lock otherwise.
    """

    def __init__(self, transport: RedisTransport, *, prefix: str, timeout_seconds: float) -> None:
        self._transport = transport
        self._prefix = prefix.rstrip(".")
        self._timeout = timeout_seconds
        self._local: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, first: str, second: str) -> AsyncIterator[str]:
        key = pair_lock_key(first, second)
        client = self._transport.client
        if client is not None:
            async with self._hold_redis(client, key):
                yield key
            return
        async with self._hold_local(key):
            yield key

    @contextlib.asynccontextmanager
    async def _hold_local(self, key: str) -> AsyncIterator[None]:
        lock = self._local.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                raise PairLockTimeout(f"Timed out waiting for pair lock {key}") from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] <= 0:
                self._waiters.pop(key, None)
                self._local.pop(key, None)

    @contextlib.asynccontextmanager
    async def _hold_redis(self, client, key: str) -> AsyncIterator[None]:
        lock = client.lock(
            f"{self._prefix}.lock.{key}",
            timeout=self._timeout,
            blocking_timeout=self._timeout,
        )
        acquired: bool | None
        try:
            acquired = await lock.acquire()
        except RedisError:
            logger.warning("Redis pair lock unavailable for %s; using local lock", key, exc_info=True)
            acquired = None
        if acquired is None:
            async with self._hold_local(key):
                yield
            return
        if not acquired:
            raise PairLockTimeout(f"Timed out waiting for pair lock {key}")
        try:
            yield
        finally:
            with contextlib.suppress(LockError, RedisError):
                await lock.release()


__all__ = ["PairLockManager", "PairLockTimeout", "pair_lock_key"]
