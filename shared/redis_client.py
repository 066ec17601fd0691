"""
Async Redis Client Wrapper for the booking services

Provides connection pooling and a process-wide client used by the session
store. Configuration is read from environment variables:
- REDIS_URL: Full connection string (overrides individual settings)
- REDIS_HOST: Redis server host (default: localhost)
- REDIS_PORT: Redis server port (default: 6379)
- REDIS_DB: Redis database number (default: 0)
- REDIS_PASSWORD: Redis password (optional)
- REDIS_MAX_CONNECTIONS: Connection pool size (default: 50)
- REDIS_SOCKET_TIMEOUT: Socket timeout in seconds (default: 5.0)
- REDIS_SOCKET_CONNECT_TIMEOUT: Connect timeout in seconds (default: 5.0)

Usage:
    from shared.redis_client import get_redis_client, close_redis_client

    redis = await get_redis_client()
    await redis.setex("key", 3600, "value")
    await close_redis_client()
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_redis_pool: Optional[redis.ConnectionPool] = None
_lock = asyncio.Lock()


@dataclass
class RedisConfig:
    """Redis connection settings"""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    max_connections: int = 50
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    url: Optional[str] = None

    def __post_init__(self):
        if self.max_connections < 1:
            raise ValueError(
                f"max_connections must be at least 1, got {self.max_connections}"
            )
        if self.socket_timeout <= 0 or self.socket_connect_timeout <= 0:
            raise ValueError("Redis socket timeouts must be positive")

    @staticmethod
    def from_env() -> "RedisConfig":
        """Load configuration from environment variables"""
        try:
            port = int(os.getenv("REDIS_PORT", "6379"))
        except ValueError:
            logger.warning("Invalid REDIS_PORT, using default 6379")
            port = 6379

        try:
            db = int(os.getenv("REDIS_DB", "0"))
        except ValueError:
            logger.warning("Invalid REDIS_DB, using default 0")
            db = 0

        try:
            max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
        except ValueError:
            logger.warning("Invalid REDIS_MAX_CONNECTIONS, using default 50")
            max_connections = 50

        try:
            socket_timeout = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0"))
            socket_connect_timeout = float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5.0"))
        except ValueError:
            logger.warning("Invalid Redis socket timeout, using default 5.0s")
            socket_timeout = 5.0
            socket_connect_timeout = 5.0

        return RedisConfig(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=port,
            db=db,
            password=os.getenv("REDIS_PASSWORD") or None,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            url=os.getenv("REDIS_URL") or None,
        )

    def get_redis_url(self) -> str:
        """Generate Redis connection URL"""
        if self.url:
            return self.url

        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


async def get_redis_pool(config: Optional[RedisConfig] = None) -> redis.ConnectionPool:
    """
    Get or create the shared Redis connection pool.

    Args:
        config: Connection settings (defaults to RedisConfig.from_env())

    Returns:
        redis.ConnectionPool: Connection pool instance
    """
    global _redis_pool

    if _redis_pool is None:
        config = config or RedisConfig.from_env()

        logger.info(
            f"Creating Redis connection pool: {config.host}:{config.port}/{config.db} "
            f"(max_connections={config.max_connections})"
        )

        # Session payloads are JSON text, so responses are decoded to str
        _redis_pool = redis.ConnectionPool.from_url(
            config.get_redis_url(),
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            decode_responses=True,
        )

    return _redis_pool


async def get_redis_client(config: Optional[RedisConfig] = None) -> redis.Redis:
    """
    Get or create the async Redis client.

    The first call pings the server with exponential backoff (1s, 2s, 4s).

    Returns:
        redis.Redis: Async Redis client instance

    Raises:
        redis.exceptions.ConnectionError: If connection fails after retries
    """
    global _redis_client

    async with _lock:
        if _redis_client is None:
            pool = await get_redis_pool(config)
            client = redis.Redis(connection_pool=pool)

            max_retries = 3
            retry_delays = [1.0, 2.0, 4.0]

            for attempt in range(max_retries):
                try:
                    await client.ping()
                    logger.info("Redis client connected successfully")
                    break
                except redis.ConnectionError as e:
                    if attempt < max_retries - 1:
                        delay = retry_delays[attempt]
                        logger.warning(
                            f"Redis connection attempt {attempt + 1}/{max_retries} failed: {e}. "
                            f"Retrying in {delay}s..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"Redis connection failed after {max_retries} attempts: {e}")
                        raise

            _redis_client = client

        return _redis_client


async def ping_redis(client: Optional[redis.Redis] = None) -> bool:
    """
    Test Redis connectivity with a PING.

    Returns:
        bool: True if PING successful, False otherwise
    """
    try:
        if client is None:
            client = await get_redis_client()
        return bool(await client.ping())
    except (redis.RedisError, OSError) as e:
        logger.error(f"Redis PING failed: {e}")
        return False


async def close_redis_client():
    """Close the Redis client and disconnect the pool on shutdown."""
    global _redis_client, _redis_pool

    async with _lock:
        if _redis_client is not None:
            try:
                await _redis_client.aclose()
                logger.info("Redis client closed")
            except redis.RedisError as e:
                logger.error(f"Error closing Redis client: {e}")
            finally:
                _redis_client = None

        if _redis_pool is not None:
            try:
                await _redis_pool.disconnect()
                logger.info("Redis connection pool disconnected")
            except redis.RedisError as e:
                logger.error(f"Error disconnecting Redis pool: {e}")
            finally:
                _redis_pool = None
