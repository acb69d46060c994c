"""
Redis connection management.

Provides connection pooling and lifecycle management.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from automation_engine.config import Settings, get_settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """
    Redis connection manager with connection pooling.

    Owned by the process's EngineServices; the queue and the leader lock
    share its client.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None

    async def init(self) -> None:
        """
        Initialize Redis connection pool.

        Raises:
            RedisError: If the server cannot be reached
        """
        settings = self._settings or get_settings()

        self._pool = ConnectionPool(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
            max_connections=settings.redis.max_connections,
            socket_timeout=settings.redis.socket_timeout,
            socket_connect_timeout=settings.redis.socket_connect_timeout,
            decode_responses=True,
        )

        self._client = redis.Redis(connection_pool=self._pool)

        # Test connection
        await self._client.ping()
        logger.info(f"Connected to Redis at {settings.redis.host}:{settings.redis.port}")

    async def close(self) -> None:
        """Close Redis connections."""
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    @property
    def client(self) -> redis.Redis:
        """Get Redis client."""
        if self._client is None:
            raise RuntimeError("Redis not initialized. Call init() first.")
        return self._client

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            return False
