"""Redis cache for resolved merchant URLs and extracted images.

Every Redis failure is logged and degrades to a cache miss so enrichment
keeps working (uncached) while Redis is down.
"""

import hashlib
import json
from typing import Any, Optional

import structlog
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from dealflow.config import settings

logger = structlog.get_logger(__name__)


class CacheService:
    """Async Redis cache service.

    Provides simple key-value caching with TTL and health checking.
    """

    def __init__(self, redis_url: str, enabled: bool = True, default_ttl: int = 3600):
        """Initialize cache service.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            enabled: When False every read is a miss and writes are no-ops
            default_ttl: TTL in seconds used when set() gets none
        """
        self.redis_url = redis_url
        self.enabled = enabled
        self.default_ttl = default_ttl
        self._redis: Optional[Redis] = None
        self.logger = logger.bind(service="cache_service")

    async def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self.logger.info("redis_connection_created", url=self.redis_url)

        return self._redis

    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache.

        Returns:
            Cached value as string, or None if not found or error
        """
        if not self.enabled:
            return None
        try:
            redis = await self._get_redis()
            value = await redis.get(key)
            self.logger.debug("cache_hit" if value is not None else "cache_miss", key=key)
            return value

        except RedisError as e:
            self.logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value in cache with TTL.

        Returns:
            True if successful, False on error
        """
        if not self.enabled:
            return False
        try:
            redis = await self._get_redis()
            await redis.set(key, value, ex=ttl or self.default_ttl)
            self.logger.debug("cache_set", key=key, ttl=ttl or self.default_ttl)
            return True

        except RedisError as e:
            self.logger.warning("cache_set_failed", key=key, error=str(e))
            return False

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            self.logger.warning("cache_value_not_json", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value), ttl)

    async def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            redis = await self._get_redis()
            result = await redis.delete(key)
            self.logger.debug("cache_delete", key=key, deleted=bool(result))
            return bool(result)

        except RedisError as e:
            self.logger.warning("cache_delete_failed", key=key, error=str(e))
            return False

    async def health_check(self) -> bool:
        """Check Redis connectivity.

        Returns:
            True if Redis is healthy, False otherwise
        """
        try:
            redis = await self._get_redis()
            await redis.ping()
            return True

        except (RedisError, OSError) as e:
            self.logger.error("redis_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close Redis connection.

        This should be called on application shutdown.
        """
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("redis_connection_closed")


# Global cache instance
_cache_instance: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get or create the global cache service instance.

    Returns:
        CacheService instance
    """
    global _cache_instance

    if _cache_instance is None:
        _cache_instance = CacheService(
            settings.REDIS_URL,
            enabled=settings.CACHE.enabled,
            default_ttl=settings.CACHE.ttl_seconds,
        )
        logger.info("cache_service_initialized", redis_url=settings.REDIS_URL)

    return _cache_instance


def _digest(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def cache_key_for_merchant_url(url: str) -> str:
    return f"merchant_url:{_digest(url)}"


def cache_key_for_images(url: str, max_images: int) -> str:
    return f"images:{max_images}:{_digest(url)}"
