"""
Redis client factory for adoq stores.

Provides:
- Async Redis client with connection pooling
- fakeredis in the test environment
- Graceful degradation: returns None when Redis is not configured or unreachable

The client is owned by the application container; nothing here keeps a
module-level handle.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis
import structlog

from libs.common.settings import Settings

logger = structlog.get_logger(__name__)


def _redacted(redis_url: str) -> str:
    """Strip credentials from a Redis URL before logging it."""
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url.split("//")[-1]


async def create_redis_client(settings: Settings, use_fake: Optional[bool] = None) -> Optional[redis.Redis]:
    """
    Create an async Redis client with connection pooling.

    Args:
        settings: Application settings (``redis_url`` and ``app_env`` are read)
        use_fake: If True, use fakeredis. If None, use it when ``app_env == "test"``.

    Returns:
        Redis client instance or None if Redis is unavailable
    """
    if use_fake is None:
        use_fake = settings.app_env == "test"

    if use_fake:
        from fakeredis import aioredis as fakeredis

        logger.info("Using fakeredis for testing")
        return fakeredis.FakeRedis(decode_responses=True)

    redis_url = settings.redis_url
    if not redis_url:
        logger.warning(
            "REDIS_URL not configured, conversation storage and caching will be disabled",
            hint="Set REDIS_URL environment variable to enable them",
        )
        return None

    try:
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await client.ping()

        logger.info("Redis client initialized successfully", url=_redacted(redis_url), max_connections=20)
        return client

    except redis.ConnectionError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redacted(redis_url),
            hint="Check REDIS_URL and ensure Redis server is running",
        )
        return None


async def close_redis_client(client: Optional[redis.Redis]) -> None:
    """Close a Redis client created by create_redis_client."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Redis client closed")
    except (redis.RedisError, OSError) as e:
        logger.warning("Error closing Redis client", error=str(e))


async def health_check(client: Optional[redis.Redis]) -> bool:
    """
    Check Redis health.

    Returns:
        True if Redis is healthy, False otherwise
    """
    if client is None:
        return False
    try:
        return await client.ping() is True
    except (redis.RedisError, OSError) as e:
        logger.error("Redis health check failed", error=str(e))
        return False
