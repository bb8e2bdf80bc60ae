"""
Cache Invalidation Service

Event-driven invalidation of link projections.
Principle: Invalidate as narrowly as possible.

Events trigger targeted cache invalidation:
- LINK_ANALYZED: status / safety fields changed, drop the projection
- LINK_EDITED: destination changed and analysis reset, drop the projection
- LINK_CODE_CHANGED: drop the projection under the OLD code
- LINK_DELETED: drop the projection
- LINK_CREATED: no invalidation needed (nothing cached yet)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from linkly.cache.redis_cache import RedisCache


logger = logging.getLogger(__name__)


class CacheEvent(Enum):
    """Events that trigger cache invalidation."""

    LINK_CREATED = "link_created"
    LINK_ANALYZED = "link_analyzed"
    LINK_ANALYSIS_FAILED = "link_analysis_failed"
    LINK_EDITED = "link_edited"
    LINK_CODE_CHANGED = "link_code_changed"
    LINK_DELETED = "link_deleted"


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: CacheEvent
    success: bool
    keys_invalidated: int
    duration_ms: float
    errors: List[str] = field(default_factory=list)


class LinkCacheInvalidator:
    """
    Handles link projection invalidation based on events.

    A failed delete is reported in the result and logged; the projection
    TTL bounds how long a missed invalidation can serve stale data.
    """

    def __init__(self, cache: RedisCache):
        self._cache = cache

    async def handle_event(
        self,
        event: CacheEvent,
        code: Optional[str] = None,
        codes: Optional[Iterable[str]] = None,
    ) -> InvalidationResult:
        """Invalidate the projections affected by an event."""
        start_time = datetime.utcnow()
        errors: List[str] = []
        keys_invalidated = 0

        targets = [c for c in ([code] if code else []) + list(codes or []) if c]

        logger.debug(f"Cache invalidation event: {event.value}, codes={targets}")

        if event != CacheEvent.LINK_CREATED:
            for target in targets:
                if await self._cache.invalidate_link(target):
                    keys_invalidated += 1
                else:
                    errors.append(f"delete failed for {target}")

        duration = (datetime.utcnow() - start_time).total_seconds() * 1000

        if errors:
            logger.error(
                f"Cache invalidation for {event.value} incomplete: {errors}. "
                f"Stale projections expire with their TTL."
            )

        return InvalidationResult(
            event=event,
            success=len(errors) == 0,
            keys_invalidated=keys_invalidated,
            duration_ms=duration,
            errors=errors,
        )
