"""
Redis Distributed Lock Module

Distributed locking using the Redis SET NX PX pattern.
Safe for multi-instance deployment with automatic TTL-based release.
"""
import logging
import uuid
import asyncio
import os
from typing import Optional
import redis.asyncio as redis

from referral_engine.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete (safe lock release)
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

DEFAULT_RETRY_DELAY_SECONDS = 0.1
ERROR_RETRY_DELAY_SECONDS = 0.2


class RedisDistributedLock:
    """
    Redis distributed lock.

    Uses SET key value NX PX with a UUID token for safe release.

    Features:
    - Atomic lock acquisition (SET NX PX)
    - Token-based safe release (Lua script)
    - Automatic TTL release on process crash
    - Retry with a bounded wait timeout (never blocks forever)

    Example:
        lock = RedisDistributedLock(
            redis_client=redis_client,
            key="referral:lock:usage:0f6c...",
            ttl_seconds=60,
            wait_timeout=5,
        )
        async with lock:
            # Critical section
            pass
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: int = 60,
        wait_timeout: float = 5,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
    ):
        """
        Args:
            redis_client: Redis client instance (must be connected)
            key: Redis key for the lock
            ttl_seconds: Lock TTL in seconds (auto-release after this time)
            wait_timeout: Maximum time to wait for lock acquisition (seconds)
            retry_delay: Delay between acquisition attempts (seconds)
        """
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.retry_delay = retry_delay
        self.token: Optional[str] = None
        self.acquired = False
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")

        self._release_script = None

    def _get_release_script(self):
        if self._release_script is None:
            self._release_script = self.redis_client.register_script(RELEASE_SCRIPT)
        return self._release_script

    async def acquire(self, correlation_id: Optional[str] = None) -> bool:
        """
        Acquire the lock, retrying until wait_timeout.

        Returns:
            True if lock acquired, False on timeout
        """
        if self.acquired:
            logger.warning(
                "REDIS_LOCK_ERROR",
                extra={
                    "component": "infra",
                    "operation": "lock_acquire",
                    "outcome": "failed",
                    "reason": "lock_already_acquired",
                    "key": self.key,
                    "correlation_id": correlation_id,
                }
            )
            return False

        self.token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        attempt = 0

        while True:
            attempt += 1
            elapsed = loop.time() - start_time

            if elapsed >= self.wait_timeout:
                logger.warning(
                    "REDIS_LOCK_TIMEOUT",
                    extra={
                        "component": "infra",
                        "operation": "lock_acquire",
                        "outcome": "timeout",
                        "key": self.key,
                        "attempts": attempt,
                        "elapsed_seconds": round(elapsed, 2),
                        "wait_timeout": self.wait_timeout,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )
                self.token = None
                return False

            try:
                result = await self.redis_client.set(
                    self.key,
                    self.token,
                    nx=True,
                    px=int(self.ttl_seconds * 1000),
                )

                if result:
                    self.acquired = True
                    logger.debug(
                        "REDIS_LOCK_ACQUIRED",
                        extra={
                            "component": "infra",
                            "operation": "lock_acquire",
                            "outcome": "success",
                            "key": self.key,
                            "attempts": attempt,
                            "elapsed_seconds": round(elapsed, 2),
                            "correlation_id": correlation_id,
                            "instance_id": self.instance_id,
                        }
                    )
                    return True

                await asyncio.sleep(self.retry_delay)

            except Exception as e:
                logger.error(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_acquire",
                        "outcome": "error",
                        "reason": str(e)[:100],
                        "key": self.key,
                        "attempt": attempt,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )
                await asyncio.sleep(ERROR_RETRY_DELAY_SECONDS)

    async def release(self, correlation_id: Optional[str] = None) -> None:
        """
        Release the lock. Only the token owner can release; idempotent.
        """
        if not self.acquired:
            return

        try:
            release_script = self._get_release_script()
            result = await release_script(keys=[self.key], args=[self.token])

            if not result:
                # Lock expired (TTL) or was taken over
                logger.warning(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_release",
                        "outcome": "failed",
                        "reason": "token_mismatch_or_already_released",
                        "key": self.key,
                        "correlation_id": correlation_id,
                        "instance_id": self.instance_id,
                    }
                )
        except Exception as e:
            logger.error(
                "REDIS_LOCK_ERROR",
                extra={
                    "component": "infra",
                    "operation": "lock_release",
                    "outcome": "error",
                    "reason": str(e)[:100],
                    "key": self.key,
                    "correlation_id": correlation_id,
                    "instance_id": self.instance_id,
                }
            )
        finally:
            self.acquired = False
            self.token = None

    async def __aenter__(self):
        acquired = await self.acquire()
        if not acquired:
            raise LockTimeoutError(self.key, self.wait_timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()
        return False
