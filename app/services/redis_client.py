# app/services/redis_client.py
"""
Pooled Redis client used for sync progress telemetry.

Every operation logs and swallows its own errors: callers treat Redis as a
best-effort side channel, never as the source of truth.
"""

import time

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REINIT_COOLDOWN_SECONDS = 30


class FastRedisClient:
    """Async Redis wrapper with connection pooling and lazy initialization."""

    def __init__(self, max_connections: int = 20):
        self.pool = None
        self.client = None
        self.max_connections = max_connections
        self._initialized = False
        self._last_failure: float | None = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            redis_url = self._build_redis_url()
            logger.info("Attempting Redis connection", url_preview=redis_url.split("@")[-1])

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            await self.client.ping()
            self._initialized = True
            logger.info("Redis client initialized", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            self._last_failure = time.monotonic()
            raise RuntimeError("Redis initialization failed") from e

    def _build_redis_url(self) -> str:
        """Explicit REDIS_URL wins; otherwise derive the TLS URL from the Upstash REST settings."""
        if settings.REDIS_URL:
            return settings.REDIS_URL

        rest_url = settings.UPSTASH_REDIS_REST_URL
        host = rest_url.removeprefix("https://").removeprefix("http://").strip("/")
        # Upstash native protocol: rediss://default:<token>@<host>:6379
        return f"rediss://default:{settings.UPSTASH_REDIS_REST_TOKEN}@{host}:6379"

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            if (
                self._last_failure is not None
                and time.monotonic() - self._last_failure < REINIT_COOLDOWN_SECONDS
            ):
                raise ConnectionError("Redis unavailable, retrying later")
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:40], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:40], error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            result = await self.client.delete(key)
            return result > 0
        except Exception as e:
            logger.error("Redis DELETE failed", key=key[:40], error=str(e))
            return False


# Global instance
fast_redis = FastRedisClient()
