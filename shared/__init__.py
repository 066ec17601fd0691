"""
Shared utilities for the booking services

- Redis client factory and connection pooling
- Base error taxonomy used by the scheduling core, session store and NLU

Usage:
    from shared import get_redis_client, RedisConfig

    redis = await get_redis_client(RedisConfig.from_env())
    await redis.setex("key", 3600, "value")
"""

from .errors import (
    CollaboratorError,
    NotFoundError,
    ServiceError,
)

from .redis_client import (
    get_redis_client,
    get_redis_pool,
    close_redis_client,
    ping_redis,
    RedisConfig,
)

__all__ = [
    # Errors
    "ServiceError",
    "NotFoundError",
    "CollaboratorError",
    # Redis client utilities
    "get_redis_client",
    "get_redis_pool",
    "close_redis_client",
    "ping_redis",
    "RedisConfig",
]
