"""
Per-usage lock providers.

At most one evaluation runs per usage at a time. Two implementations:
- LocalUsageLockProvider: single process, one asyncio.Lock per key
- RedisUsageLockProvider: multi-instance, RedisDistributedLock per key

Keys are namespaced: "usage" for evaluations, "referee" for claims by one
referee. Both providers raise LockTimeoutError when the lock cannot be taken
within the configured wait timeout; callers treat that as transient.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

import redis.asyncio as redis

from referral_engine.core.exceptions import LockTimeoutError
from referral_engine.core.redis_lock import RedisDistributedLock

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "referral:lock:"


def lock_key(key_id, namespace: str = "usage") -> str:
    return f"{LOCK_KEY_PREFIX}{namespace}:{key_id}"


class UsageLockProvider(Protocol):
    def hold(self, key_id, namespace: str = "usage") -> AsyncContextManager[None]:
        ...


class LocalUsageLockProvider:
    """In-process lock provider (one event loop)."""

    def __init__(self, wait_timeout: float = 5.0):
        self.wait_timeout = wait_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key_id, namespace: str = "usage") -> AsyncIterator[None]:
        key = lock_key(key_id, namespace)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
            except asyncio.TimeoutError:
                raise LockTimeoutError(key, self.wait_timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            # Drop the entry once nobody holds or waits on it
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def active_keys(self) -> int:
        return len(self._locks)


class RedisUsageLockProvider:
    """Distributed lock provider backed by Redis."""

    def __init__(
        self,
        redis_client: redis.Redis,
        wait_timeout: float = 5.0,
        ttl_seconds: int = 60,
    ):
        self.redis_client = redis_client
        self.wait_timeout = wait_timeout
        self.ttl_seconds = ttl_seconds

    @asynccontextmanager
    async def hold(self, key_id, namespace: str = "usage") -> AsyncIterator[None]:
        lock = RedisDistributedLock(
            redis_client=self.redis_client,
            key=lock_key(key_id, namespace),
            ttl_seconds=self.ttl_seconds,
            wait_timeout=self.wait_timeout,
        )
        async with lock:
            yield


def build_lock_provider(
    redis_client: Optional[redis.Redis],
    wait_timeout: float,
    ttl_seconds: int,
):
    """Redis-backed provider when a client is configured, local otherwise."""
    if redis_client is not None:
        logger.info("USAGE_LOCKS: using Redis distributed locks")
        return RedisUsageLockProvider(redis_client, wait_timeout=wait_timeout, ttl_seconds=ttl_seconds)
    logger.info("USAGE_LOCKS: Redis not configured, using in-process locks")
    return LocalUsageLockProvider(wait_timeout=wait_timeout)
