"""
Linkly Caching Layer

Cache-aside storage for link redirect projections:
- RedisCache: get / set-with-TTL / delete with circuit breaker
- LinkCacheInvalidator: Event-driven projection invalidation

Usage:
    cache = RedisCache(get_cache_config())
    await cache.initialize()
    projection = await cache.get_link_projection("ab12c")

    # Invalidate on changes
    invalidator = LinkCacheInvalidator(cache)
    await invalidator.handle_event(CacheEvent.LINK_ANALYZED, code="ab12c")
"""

from linkly.cache.config import CacheConfig, CacheTTL, get_cache_config
from linkly.cache.redis_cache import (
    RedisCache,
    CircuitBreaker,
    serialize_value,
    deserialize_value,
)
from linkly.cache.invalidation import (
    LinkCacheInvalidator,
    CacheEvent,
    InvalidationResult,
)

__all__ = [
    # Config
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    # Redis
    "RedisCache",
    "CircuitBreaker",
    "serialize_value",
    "deserialize_value",
    # Invalidation
    "LinkCacheInvalidator",
    "CacheEvent",
    "InvalidationResult",
]
