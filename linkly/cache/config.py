"""
Cache Configuration

Centralized configuration for the link projection cache.

Settings can be overridden via environment variables:
- CACHE_ENABLED: Enable/disable caching globally
- CACHE_NAMESPACE: Key prefix
- REDIS_URL: Redis connection URL
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache


@dataclass(frozen=True)
class CacheTTL:
    """
    Cache TTL configuration by data type.

    Link projections are explicitly deleted whenever a redirect-relevant
    field changes; the TTL only bounds staleness when an invalidation
    is lost.
    """

    LINK_PROJECTION: timedelta = timedelta(hours=1)

    @classmethod
    def from_seconds(cls, seconds: int) -> timedelta:
        """TTL from a configured number of seconds, falling back to the default."""
        if seconds and seconds > 0:
            return timedelta(seconds=seconds)
        return cls.LINK_PROJECTION


@dataclass
class CacheConfig:
    """Main cache configuration."""

    # Cache namespace (for key prefixes)
    namespace: str = field(default_factory=lambda: os.getenv(
        "CACHE_NAMESPACE",
        "linkly"
    ))

    # Global cache toggle
    enabled: bool = field(default_factory=lambda: os.getenv(
        "CACHE_ENABLED",
        "true"
    ).lower() == "true")

    # Redis connection
    redis_url: str = field(default_factory=lambda: os.getenv(
        "REDIS_URL",
        "redis://127.0.0.1:6379/0"
    ))
    redis_max_connections: int = field(default_factory=lambda: int(os.getenv(
        "REDIS_MAX_CONNECTIONS",
        "20"
    )))
    redis_socket_timeout: float = field(default_factory=lambda: float(os.getenv(
        "REDIS_SOCKET_TIMEOUT",
        "2.0"
    )))
    redis_connect_timeout: float = field(default_factory=lambda: float(os.getenv(
        "REDIS_CONNECT_TIMEOUT",
        "2.0"
    )))

    # Circuit breaker (fail fast while Redis is down)
    circuit_breaker_enabled: bool = field(default_factory=lambda: os.getenv(
        "CACHE_CIRCUIT_BREAKER_ENABLED",
        "true"
    ).lower() == "true")
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: int = 30


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get singleton cache configuration."""
    return CacheConfig()
