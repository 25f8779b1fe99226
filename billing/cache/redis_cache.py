"""
Redis Cache Service

Кэш для редко меняющихся данных биллинга в Redis.

Кэшируемые данные:
- Снимок административных настроек (admin_settings)
"""

import logging
import pickle
from typing import Optional, Any, Dict

from redis.asyncio import Redis

from config.settings import Settings


class CacheConfig:
    """Configuration for cache TTLs and key names."""

    ADMIN_SETTINGS_KEY = "billing:admin_settings"


class RedisCache:
    """
    Redis-based cache with pickle serialization.

    Every operation degrades to a miss when Redis is disabled or failing:
    the database stays the source of truth.
    """

    def __init__(self, settings: Settings, redis: Optional[Redis] = None):
        self.settings = settings
        self.redis: Optional[Redis] = redis
        self._enabled = redis is not None

        if self.redis is None and settings.REDIS_ENABLED:
            try:
                self.redis = Redis(
                    host=settings.REDIS_HOST,
                    port=settings.REDIS_PORT,
                    password=settings.REDIS_PASSWORD,
                    db=settings.REDIS_CACHE_DB,
                    decode_responses=False,
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                )
                self._enabled = True
                logging.info(
                    f"RedisCache initialized at {settings.REDIS_HOST}:{settings.REDIS_PORT}, "
                    f"DB={settings.REDIS_CACHE_DB}"
                )
            except Exception as e:
                logging.error(f"Failed to initialize RedisCache: {e}")
                self._enabled = False
        elif self.redis is None:
            logging.info("RedisCache disabled (REDIS_ENABLED is false)")

    def is_enabled(self) -> bool:
        return self._enabled and self.redis is not None

    # ==================== Basic Cache Operations ====================

    async def get(self, key: str) -> Optional[Any]:
        if not self.is_enabled():
            return None

        try:
            value = await self.redis.get(key)
            if value is None:
                return None
            return pickle.loads(value)
        except Exception as e:
            logging.error(f"Cache GET error for key '{key}': {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.is_enabled():
            return False

        try:
            serialized = pickle.dumps(value)
            if ttl:
                await self.redis.setex(key, ttl, serialized)
            else:
                await self.redis.set(key, serialized)
            logging.debug(f"Cache SET: key='{key}', ttl={ttl}s")
            return True
        except Exception as e:
            logging.error(f"Cache SET error for key '{key}': {e}")
            return False

    async def delete(self, key: str) -> bool:
        if not self.is_enabled():
            return False

        try:
            result = await self.redis.delete(key)
            logging.debug(f"Cache DELETE: key='{key}', deleted={result}")
            return result > 0
        except Exception as e:
            logging.error(f"Cache DELETE error for key '{key}': {e}")
            return False

    # ==================== Domain-Specific Cache Methods ====================

    async def get_admin_settings(self) -> Optional[Dict[str, Optional[str]]]:
        return await self.get(CacheConfig.ADMIN_SETTINGS_KEY)

    async def set_admin_settings(self, values: Dict[str, Optional[str]]) -> bool:
        return await self.set(
            CacheConfig.ADMIN_SETTINGS_KEY,
            values,
            self.settings.SETTINGS_CACHE_TTL,
        )

    async def invalidate_admin_settings(self) -> bool:
        return await self.delete(CacheConfig.ADMIN_SETTINGS_KEY)

    # ==================== Utility Methods ====================

    async def close(self):
        if self.redis:
            try:
                await self.redis.aclose()
                logging.info("RedisCache connection closed")
            except Exception as e:
                logging.error(f"Error closing RedisCache: {e}")
