"""
Redis Client Module

Async Redis client using redis.asyncio with singleton pattern.
Backs the distributed per-usage lock when the engine runs on more than one
process or host.
"""
import logging
from typing import Optional
import redis.asyncio as redis
from referral_engine.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create Redis client instance (singleton pattern).

    Returns:
        Redis client instance if configured, None if Redis URL not set

    Raises:
        RuntimeError: If the client cannot be created from the configured URL
    """
    global _redis_client

    redis_url = get_settings().redis_url
    if not redis_url:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )
            logger.info("Redis client created")
        except Exception as e:
            logger.error(f"Failed to create Redis client: {e}")
            _redis_client = None
            raise RuntimeError(f"Redis client creation failed: {e}")

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Check Redis connection health with PING.

    Does NOT raise - returns False on any error.
    """
    global REDIS_READY

    try:
        client = await get_redis_client()
        if client is None:
            REDIS_READY = False
            return False

        REDIS_READY = bool(await client.ping())
        logger.info(
            "REDIS_HEALTH_CHECK",
            extra={
                "component": "infra",
                "operation": "redis_health_check",
                "outcome": "success" if REDIS_READY else "failed",
            }
        )
        return REDIS_READY
    except Exception as e:
        REDIS_READY = False
        logger.warning(
            "REDIS_CONNECTION_FAILED",
            extra={
                "component": "infra",
                "operation": "redis_health_check",
                "outcome": "failed",
                "reason": str(e)[:100],
            }
        )
        return False


async def close_redis_client() -> None:
    """Close Redis client connection pool. Idempotent."""
    global _redis_client, REDIS_READY

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
            REDIS_READY = False
