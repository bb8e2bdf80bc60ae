"""
Link Resolver

Cache-aside redirect decision for short codes:
1. Look up the cached projection by code
2. On a hit, bump the hit counter in the background
3. On a miss, read the Link, bump the counter, then cache a fresh projection
4. Gate the redirect on the current safety fields, cached or not
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional, Set

from linkly.cache.config import CacheTTL
from linkly.cache.redis_cache import RedisCache
from linkly.database.models import AnalysisStatus
from linkly.database.repository import LinkRepository
from linkly.errors import LinkNotFound

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_THRESHOLD = 3

# Fields a projection must carry to be usable
PROJECTION_FIELDS = (
    "code",
    "destination",
    "analysis_status",
    "safety_rating",
    "safety_justification",
)


class ResolveOutcome(Enum):
    """How the redirect-serving layer should answer."""
    DIRECT = "direct"
    WARNING = "warning"


@dataclass(frozen=True)
class ResolveResult:
    """Redirect decision for one short code."""
    outcome: ResolveOutcome
    code: str
    destination: str
    justification: Optional[str] = None
    from_cache: bool = False

    @property
    def is_warning(self) -> bool:
        return self.outcome == ResolveOutcome.WARNING


def build_projection(link: Dict[str, Any]) -> Dict[str, Any]:
    """Redirect-relevant subset of a link record, as stored in the cache."""
    return {
        "link_id": str(link["id"]),
        "code": link["code"],
        "destination": link["destination"],
        "analysis_status": link["analysis_status"],
        "safety_rating": link["safety_rating"],
        "safety_justification": link["safety_justification"],
    }


def is_valid_projection(projection: Any) -> bool:
    return (
        isinstance(projection, dict)
        and all(f in projection for f in PROJECTION_FIELDS)
        and bool(projection.get("destination"))
    )


def evaluate_safety_gate(
    projection: Dict[str, Any],
    threshold: int = DEFAULT_SAFETY_THRESHOLD,
    from_cache: bool = False,
) -> ResolveResult:
    """
    Decide between a direct redirect and a warning.

    Only a COMPLETED analysis with a rating below the threshold warns.
    Pending, failed or unrated links redirect directly.
    """
    rating = projection.get("safety_rating")
    unsafe = (
        projection.get("analysis_status") == AnalysisStatus.COMPLETED.value
        and rating is not None
        and int(rating) < threshold
    )

    if unsafe:
        return ResolveResult(
            outcome=ResolveOutcome.WARNING,
            code=projection["code"],
            destination=projection["destination"],
            justification=projection.get("safety_justification") or "",
            from_cache=from_cache,
        )

    return ResolveResult(
        outcome=ResolveOutcome.DIRECT,
        code=projection["code"],
        destination=projection["destination"],
        from_cache=from_cache,
    )


class Resolver:
    """
    Resolves short codes to redirect decisions.

    Safe to call concurrently: counters are incremented atomically in the
    repository, and projection writes are idempotent.
    """

    def __init__(
        self,
        cache: RedisCache,
        links: LinkRepository,
        safety_threshold: int = DEFAULT_SAFETY_THRESHOLD,
        cache_ttl: Optional[timedelta] = None,
    ):
        self._cache = cache
        self._links = links
        self.safety_threshold = safety_threshold
        self.cache_ttl = cache_ttl or CacheTTL.LINK_PROJECTION
        self._background: Set[asyncio.Task] = set()

    async def resolve(self, code: str) -> ResolveResult:
        """
        Resolve a short code.

        Raises:
            LinkNotFound: the code was never created (or was deleted)
        """
        code = (code or "").strip()
        if not code:
            raise LinkNotFound(code)

        projection = await self._cache.get_link_projection(code)

        if projection is not None and is_valid_projection(projection):
            # Hit: counter is eventually consistent, resolution does not wait
            self._schedule_hit(code)
            return evaluate_safety_gate(projection, self.safety_threshold, from_cache=True)

        if projection is not None:
            # Overwritten by the write below
            logger.warning(f"Ignoring malformed projection for {code}")

        link = await asyncio.to_thread(self._links.get_by_code, code)
        if link is None:
            raise LinkNotFound(code)

        if not await asyncio.to_thread(self._links.increment_hits, code):
            # Deleted between read and increment
            raise LinkNotFound(code)

        projection = build_projection(link)
        await self._cache.set_link_projection(code, projection, self.cache_ttl)

        return evaluate_safety_gate(projection, self.safety_threshold)

    def _schedule_hit(self, code: str) -> None:
        task = asyncio.create_task(self._increment_in_background(code))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _increment_in_background(self, code: str) -> None:
        try:
            updated = await asyncio.to_thread(self._links.increment_hits, code)
            if not updated:
                logger.warning(f"Hit for {code} not counted: link no longer exists")
        except Exception as e:
            # Fire-and-forget: a lost hit must not surface to the caller
            logger.warning(f"Failed to count hit for {code}: {e}")

    @property
    def pending_increments(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for outstanding background counter increments."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
