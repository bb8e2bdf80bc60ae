"""
Pytest Configuration and Shared Fixtures

Provides a throwaway SQLite database, an in-memory Redis, and a scripted
stand-in for the text-analysis provider.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, Union

import fakeredis
import pytest

from linkly.cache.config import CacheConfig
from linkly.cache.invalidation import LinkCacheInvalidator
from linkly.cache.redis_cache import RedisCache
from linkly.database.repository import CollectionRepository, LinkRepository
from linkly.database.session import create_db_engine, init_db, make_session_factory
from linkly.jobs.queue import RedisJobQueue, RetryPolicy
from linkly.services.membership import MembershipService
from linkly.services.resolver import Resolver
from linkly.services.system_collections import SystemCollectionService


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite so worker threads share one database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'linkly_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def link_repo(session_factory) -> LinkRepository:
    return LinkRepository(session_factory)


@pytest.fixture
def collection_repo(session_factory) -> CollectionRepository:
    return CollectionRepository(session_factory)


@pytest.fixture
def membership(link_repo, collection_repo) -> MembershipService:
    return MembershipService(link_repo, collection_repo)


@pytest.fixture
def system_collections(link_repo, collection_repo, membership) -> SystemCollectionService:
    return SystemCollectionService(link_repo, collection_repo, membership)


# ============================================================================
# Redis
# ============================================================================

@pytest.fixture
def redis_client():
    """Isolated in-memory Redis per test."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        namespace="test",
        enabled=True,
        circuit_breaker_enabled=True,
        circuit_breaker_threshold=3,
        circuit_breaker_timeout=30,
    )


@pytest.fixture
def cache(cache_config, redis_client) -> RedisCache:
    return RedisCache(cache_config, client=redis_client)


@pytest.fixture
def invalidator(cache) -> LinkCacheInvalidator:
    return LinkCacheInvalidator(cache)


@pytest.fixture
def queue(redis_client) -> RedisJobQueue:
    return RedisJobQueue(
        redis_client,
        retry_policy=RetryPolicy(attempts=3, backoff_seconds=5.0),
        namespace="test",
    )


@pytest.fixture
def resolver(cache, link_repo) -> Resolver:
    return Resolver(cache, link_repo, safety_threshold=3)


# ============================================================================
# Text-analysis provider
# ============================================================================

Reply = Union[str, Exception, Callable[[str, Optional[str]], str]]


class ScriptedGenerator:
    """
    Plays back canned replies in order, recording every call.

    A reply may be a string, an exception to raise, or a callable of
    (prompt, system). When the script runs out, `default` is used.
    """

    def __init__(self, replies: Optional[List[Reply]] = None, default: Optional[Reply] = None, delay: float = 0.0):
        self.replies = list(replies or [])
        self.default = default
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def prompts(self) -> List[str]:
        return [c["prompt"] for c in self.calls]

    async def generate(self, prompt: str, system: Optional[str] = None) -> str:
        call = {"prompt": prompt, "system": system, "started": time.monotonic()}
        self.calls.append(call)
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            reply = self.replies.pop(0) if self.replies else self.default
            if reply is None:
                raise AssertionError(f"Unexpected provider call: {prompt[:80]}")
            if isinstance(reply, Exception):
                raise reply
            if callable(reply):
                return reply(prompt, system)
            return reply
        finally:
            self._in_flight -= 1
            call["finished"] = time.monotonic()


def combined_reply(
    rating: int = 4,
    category: str = "Programming/Tech Blog",
    summary: str = "A blog post about Python packaging.",
    tags: Optional[List[str]] = None,
    justification: str = "Legitimate technical content.",
    confidence: float = 0.9,
) -> str:
    return json.dumps({
        "summary": summary,
        "tags": tags if tags is not None else ["python", "packaging"],
        "safety": {"rating": rating, "justification": justification},
        "classification": {
            "category": category,
            "confidence": confidence,
            "reason": "Discusses code.",
        },
    })


def assessment_reply(rating: int = 4, category: str = "Documentation/Reference") -> str:
    return json.dumps({
        "safety": {"rating": rating, "justification": "No red flags."},
        "classification": {"category": category, "confidence": 0.8, "reason": "Reference docs."},
    })


def summary_reply(summary: str = "Merged summary.", tags: Optional[List[str]] = None) -> str:
    return json.dumps({"summary": summary, "tags": tags or ["docs"]})


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator(default=combined_reply())


@pytest.fixture
def page_text() -> str:
    """Content long enough to analyze, short enough for one request."""
    return (
        "Packaging Python projects with pyproject.toml. This tutorial walks through "
        "declaring metadata, dependencies and build backends, then publishing a wheel. "
    ) * 3
