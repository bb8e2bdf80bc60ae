"""
Redis Cache Implementation

Redis-backed key-value store with per-entry expiry:
- Circuit breaker for resilience
- Namespace isolation
- Async operations throughout
- Graceful degradation: errors read as misses, writes report failure
- Statistics tracking
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from linkly.cache.config import CacheConfig, CacheTTL, get_cache_config


logger = logging.getLogger(__name__)


def serialize_value(value: Any) -> bytes:
    """
    Serialize a Python value to bytes for caching.

    Uses JSON with default handler for non-serializable types.
    """
    def default_handler(obj):
        if hasattr(obj, 'isoformat'):
            return obj.isoformat()
        if hasattr(obj, '__dict__'):
            return obj.__dict__
        return str(obj)

    return json.dumps(value, default=default_handler, ensure_ascii=False).encode('utf-8')


def deserialize_value(data: Union[bytes, str]) -> Any:
    """Deserialize bytes back to Python value."""
    if not data:
        return None
    if isinstance(data, bytes):
        data = data.decode('utf-8')
    return json.loads(data)


@dataclass
class CacheStats:
    """Cache operation statistics."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    writes: int = 0
    deletes: int = 0
    latency_samples: List[float] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def avg_latency_ms(self) -> float:
        if not self.latency_samples:
            return 0.0
        recent = self.latency_samples[-100:]
        return sum(recent) / len(recent) * 1000

    def record_latency(self, seconds: float):
        """Record a latency sample."""
        self.latency_samples.append(seconds)
        # Keep only last 1000 samples
        if len(self.latency_samples) > 1000:
            self.latency_samples = self.latency_samples[-1000:]


@dataclass
class CircuitBreakerState:
    """Circuit breaker state tracking."""
    failures: int = 0
    last_failure: float = 0.0
    is_open: bool = False
    opened_at: float = 0.0


class CircuitBreaker:
    """
    Circuit breaker pattern for Redis connection.

    Fails fast after `threshold` consecutive failures, then lets a
    request through once `timeout` seconds have passed.
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout: int = 30,
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitBreakerState()
        self._lock = asyncio.Lock()

    async def is_available(self) -> bool:
        """Check if circuit allows requests."""
        if not self.state.is_open:
            return True

        if time.time() - self.state.opened_at >= self.timeout:
            async with self._lock:
                # Half-open state - allow one request through
                self.state.is_open = False
                self.state.failures = 0
                logger.info("Circuit breaker closed, allowing requests")
            return True

        return False

    async def record_success(self):
        """Record successful operation."""
        async with self._lock:
            self.state.failures = 0
            self.state.is_open = False

    async def record_failure(self):
        """Record failed operation."""
        async with self._lock:
            self.state.failures += 1
            self.state.last_failure = time.time()

            if self.state.failures >= self.threshold:
                self.state.is_open = True
                self.state.opened_at = time.time()
                logger.warning(
                    f"Circuit breaker opened after {self.state.failures} failures. "
                    f"Will retry in {self.timeout} seconds."
                )


class RedisCache:
    """
    Async Redis cache for link projections.

    Features:
    - get / set with TTL / delete contract
    - Circuit breaker for resilience
    - Namespace isolation
    - Graceful degradation (returns None on errors)

    A pre-built client may be injected (tests pass a fakeredis client).
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        client: Optional[Redis] = None,
    ):
        self.config = config or get_cache_config()
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[Redis] = client
        self._owns_client = client is None
        self._circuit_breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            timeout=self.config.circuit_breaker_timeout,
        ) if self.config.circuit_breaker_enabled else None
        self._stats = CacheStats()
        self._initialized = client is not None
        self._lock = asyncio.Lock()

    @property
    def client(self) -> Optional[Redis]:
        return self._redis

    async def initialize(self):
        """Initialize Redis connection pool."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            try:
                self._pool = ConnectionPool.from_url(
                    self.config.redis_url,
                    max_connections=self.config.redis_max_connections,
                    socket_timeout=self.config.redis_socket_timeout,
                    socket_connect_timeout=self.config.redis_connect_timeout,
                    decode_responses=False,  # We handle bytes directly
                )
                self._redis = Redis(connection_pool=self._pool)

                # Test connection
                await self._redis.ping()
                self._initialized = True
                logger.info(f"Redis cache initialized: {self.config.redis_url}")

            except Exception as e:
                logger.error(f"Failed to initialize Redis: {e}")
                self._initialized = False
                raise

    async def close(self):
        """Close Redis connection pool."""
        if self._redis and self._owns_client:
            await self._redis.aclose()
        if self._pool:
            await self._pool.disconnect()
        self._initialized = False
        logger.info("Redis cache closed")

    async def _ensure_ready(self) -> bool:
        if self._initialized:
            return True
        try:
            await self.initialize()
            return True
        except Exception:
            self._stats.errors += 1
            return False

    @asynccontextmanager
    async def _with_circuit_breaker(self):
        """Context manager for circuit breaker pattern."""
        if self._circuit_breaker and not await self._circuit_breaker.is_available():
            raise RedisConnectionError("Circuit breaker is open")

        try:
            yield
            if self._circuit_breaker:
                await self._circuit_breaker.record_success()
        except (RedisError, RedisConnectionError):
            if self._circuit_breaker:
                await self._circuit_breaker.record_failure()
            raise

    def _make_key(self, *parts: str) -> str:
        """Create namespaced cache key."""
        return f"{self.config.namespace}:{':'.join(str(p) for p in parts)}"

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns None if:
        - Key doesn't exist or expired
        - Cache is disabled
        - Redis is unavailable
        - Deserialization fails
        """
        if not self.config.enabled or not await self._ensure_ready():
            return None

        start_time = time.time()

        try:
            async with self._with_circuit_breaker():
                data = await self._redis.get(key)

            self._stats.record_latency(time.time() - start_time)

            if data is None:
                self._stats.misses += 1
                return None

            self._stats.hits += 1
            return deserialize_value(data)

        except RedisConnectionError:
            self._stats.errors += 1
            logger.warning("Redis unavailable, returning None")
            return None
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Cache get error for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[timedelta] = None,
    ) -> bool:
        """
        Set value in cache with optional TTL.

        Returns True on success, False on failure.
        """
        if not self.config.enabled or not await self._ensure_ready():
            return False

        start_time = time.time()

        try:
            payload = serialize_value(value)

            async with self._with_circuit_breaker():
                if ttl:
                    await self._redis.setex(key, ttl, payload)
                else:
                    await self._redis.set(key, payload)

            self._stats.record_latency(time.time() - start_time)
            self._stats.writes += 1
            return True

        except RedisConnectionError:
            self._stats.errors += 1
            logger.warning("Redis unavailable, cache set failed")
            return False
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Cache set error for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete a key from cache. Returns False if Redis could not be reached."""
        if not self.config.enabled or not await self._ensure_ready():
            return False

        try:
            async with self._with_circuit_breaker():
                await self._redis.delete(key)
            self._stats.deletes += 1
            return True
        except Exception as e:
            self._stats.errors += 1
            logger.error(f"Cache delete error for {key}: {e}")
            return False

    # =========================================================================
    # Link Projection Operations
    # =========================================================================

    def link_key(self, code: str) -> str:
        """Generate link projection cache key."""
        return self._make_key("link", code)

    async def get_link_projection(self, code: str) -> Optional[Dict]:
        """Get cached redirect projection for a short code."""
        return await self.get(self.link_key(code))

    async def set_link_projection(
        self,
        code: str,
        projection: Dict,
        ttl: Optional[timedelta] = None,
    ) -> bool:
        """Cache the redirect projection for a short code."""
        return await self.set(self.link_key(code), projection, ttl or CacheTTL.LINK_PROJECTION)

    async def invalidate_link(self, code: str) -> bool:
        """Drop the cached projection for a short code."""
        return await self.delete(self.link_key(code))

    # =========================================================================
    # Statistics and Health
    # =========================================================================

    def get_stats(self) -> Dict:
        """Get cache statistics."""
        return {
            "enabled": self.config.enabled,
            "initialized": self._initialized,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "writes": self._stats.writes,
            "deletes": self._stats.deletes,
            "errors": self._stats.errors,
            "hit_rate_percent": round(self._stats.hit_rate * 100, 2),
            "avg_latency_ms": round(self._stats.avg_latency_ms, 2),
            "circuit_breaker_open": (
                self._circuit_breaker.state.is_open
                if self._circuit_breaker else False
            ),
        }

    async def health_check(self) -> Dict:
        """Perform health check."""
        if not self.config.enabled:
            return {"healthy": True, "status": "disabled"}

        try:
            if not self._initialized:
                await self.initialize()

            start = time.time()
            async with self._with_circuit_breaker():
                await self._redis.ping()
            latency_ms = (time.time() - start) * 1000

            return {
                "healthy": True,
                "status": "connected",
                "latency_ms": round(latency_ms, 2),
                "stats": self.get_stats(),
            }

        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "error": str(e),
                "stats": self.get_stats(),
            }
