"""
Redis connectivity for Attic.

Provides the async Redis client factory and health check used by the
conversation store.
"""

from libs.caching.redis_client import close_redis_client, create_redis_client, health_check

__all__ = ["create_redis_client", "close_redis_client", "health_check"]
