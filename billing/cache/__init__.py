from billing.cache.redis_cache import (
    RedisCache,
    CacheConfig,
)

__all__ = [
    "RedisCache",
    "CacheConfig",
]
