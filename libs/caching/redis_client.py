"""
Redis client factory for the conversation store.

Provides:
- Async Redis client with connection pooling
- fakeredis in the test environment
- Health check used by ``/healthz``

The client is owned by the process lifecycle rather than a module global.
"""

from typing import Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


def _redact(redis_url: str) -> str:
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url.split("//")[-1]


async def create_redis_client(redis_url: str, use_fake: bool = False) -> redis.Redis:
    """
    Create an async Redis client with connection pooling.

    Args:
        redis_url: Redis connection URL
        use_fake: Use an in-process fakeredis server (test environment only)

    Returns:
        Connected Redis client

    Raises:
        redis.ConnectionError: If the server cannot be reached
    """
    if use_fake:
        from fakeredis import aioredis as fakeredis

        logger.info("Using fakeredis for testing")
        return fakeredis.FakeRedis(decode_responses=True)

    client = redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
        socket_timeout=5,
        socket_connect_timeout=5,
        retry_on_timeout=True,
    )

    try:
        await client.ping()
    except redis.ConnectionError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(redis_url),
            hint="Check ATTIC_REDIS_URL and ensure Redis server is running",
        )
        await client.aclose()
        raise

    logger.info("Redis client initialized successfully", url=_redact(redis_url), max_connections=20)
    return client


async def close_redis_client(client: Optional[redis.Redis]) -> None:
    """Close Redis client connection."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Redis client closed")
    except Exception as e:
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
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        return False
