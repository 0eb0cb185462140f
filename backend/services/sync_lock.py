"""
Per-data-source mutual exclusion for sync runs.

At most one sync may run per data source. Acquisition is fail-fast: a
second caller gets :class:`SyncAlreadyRunningError` immediately instead of
queueing behind the first.

Two backends:
- ``InProcessSyncLock``: a set of held keys on one event loop (tests,
  single-process deployments)
- ``RedisSyncLock``: ``SET NX EX`` with a per-holder token and a Lua
  compare-and-delete release, shared by the API and every Celery worker.
  The TTL bounds how long a crashed holder can block a data source.

Usage:
    async with lock.hold(f"data_source:{data_source_id}"):
        ...  # sync
"""

from __future__ import annotations

import logging
import secrets
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as aioredis

from config import settings

logger = logging.getLogger(__name__)


class SyncAlreadyRunningError(RuntimeError):
    """Raised when a sync is already in progress for the lock key."""


class SyncLock(Protocol):
    def hold(self, key: str) -> AbstractAsyncContextManager[None]:
        ...


class InProcessSyncLock:
    """Fail-fast lock keyed by string, valid within one event loop."""

    def __init__(self) -> None:
        self._held: set[str] = set()

    def is_held(self, key: str) -> bool:
        return key in self._held

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        # Check-and-add has no await in between, so it is atomic on the loop
        if key in self._held:
            raise SyncAlreadyRunningError(f"Sync already running for {key}")
        self._held.add(key)
        logger.debug("[SyncLock] Acquired key=%s", key)
        try:
            yield
        finally:
            self._held.discard(key)
            logger.debug("[SyncLock] Released key=%s", key)


class RedisSyncLock:
    """Distributed fail-fast lock backed by Redis."""

    # Only the holder that set the key may delete it
    _RELEASE_SCRIPT: str = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, redis_url: str, ttl_seconds: int = 3600) -> None:
        """
        Args:
            redis_url: Redis connection URL.
            ttl_seconds: Upper bound on a single sync; the key expires after this.
        """
        self._redis: aioredis.Redis = aioredis.from_url(redis_url, decode_responses=True)
        self._ttl_seconds: int = ttl_seconds
        self._release = self._redis.register_script(self._RELEASE_SCRIPT)

    @staticmethod
    def _redis_key(key: str) -> str:
        return f"sync_lock:{key}"

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        redis_key = self._redis_key(key)
        token = secrets.token_hex(16)
        acquired = await self._redis.set(redis_key, token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            raise SyncAlreadyRunningError(f"Sync already running for {key}")
        logger.debug("[SyncLock] Acquired redis key=%s ttl=%ds", redis_key, self._ttl_seconds)
        try:
            yield
        finally:
            released = await self._release(keys=[redis_key], args=[token])
            if not released:
                logger.warning(
                    "[SyncLock] Lock %s expired before release; the sync outlived its TTL",
                    redis_key,
                )

    async def close(self) -> None:
        await self._redis.aclose()


def get_sync_lock() -> InProcessSyncLock | RedisSyncLock:
    """Lock backend selected by SYNC_LOCK_BACKEND."""
    backend = settings.SYNC_LOCK_BACKEND.lower()
    if backend == "memory":
        return InProcessSyncLock()
    if backend == "redis":
        return RedisSyncLock(settings.REDIS_URL, ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS)
    raise ValueError(f"Unknown SYNC_LOCK_BACKEND: {settings.SYNC_LOCK_BACKEND}")
