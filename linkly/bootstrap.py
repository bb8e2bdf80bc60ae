"""
Wiring

Builds the link core from Settings: repositories, Redis cache and queue,
resolver, link services and the analysis worker.

Usage:
    core = await LinklyCore.create()
    result = await core.resolver.resolve("ab12c")
    await core.close()
"""

import asyncio
import logging
from typing import Dict, Optional

from redis.asyncio import Redis

from linkly.analyzer.client import TextGenerator
from linkly.analyzer.engine import AnalysisEngine
from linkly.cache.config import CacheConfig, CacheTTL
from linkly.cache.invalidation import LinkCacheInvalidator
from linkly.cache.redis_cache import RedisCache
from linkly.content.fetcher import ContentFetcher
from linkly.database.repository import CollectionRepository, LinkRepository
from linkly.database.session import (
    check_db_connection,
    create_db_engine,
    init_db,
    make_session_factory,
)
from linkly.integrations.config import ExternalAPIClients, ExternalAPIConfig
from linkly.jobs.queue import QueueConsumer, RedisJobQueue, RetryPolicy
from linkly.jobs.worker import AnalysisWorker
from linkly.services.links import LinkService
from linkly.services.membership import MembershipService
from linkly.services.resolver import Resolver
from linkly.services.system_collections import SystemCollectionService
from linkly.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LinklyCore:
    """Container for the wired components."""

    def __init__(
        self,
        settings: Settings,
        redis_client: Redis,
        session_factory=None,
        generator: Optional[TextGenerator] = None,
        clients: Optional[ExternalAPIClients] = None,
    ):
        self.settings = settings
        self.redis = redis_client
        self.session_factory = session_factory
        self.clients = clients or ExternalAPIClients(ExternalAPIConfig.from_settings(settings))

        self.links = LinkRepository(session_factory)
        self.collections = CollectionRepository(session_factory)
        self.membership = MembershipService(self.links, self.collections)
        self.system_collections = SystemCollectionService(
            self.links, self.collections, self.membership
        )

        cache_config = CacheConfig(redis_url=settings.REDIS_URL)
        self.cache = RedisCache(cache_config, client=redis_client)
        self.invalidator = LinkCacheInvalidator(self.cache)
        self.queue = RedisJobQueue(
            redis_client,
            retry_policy=RetryPolicy.from_settings(settings),
            namespace=cache_config.namespace,
        )

        self.resolver = Resolver(
            self.cache,
            self.links,
            safety_threshold=settings.SAFETY_WARNING_THRESHOLD,
            cache_ttl=CacheTTL.from_seconds(settings.LINK_CACHE_TTL_SECONDS),
        )
        self.link_service = LinkService(
            self.links,
            self.membership,
            self.queue,
            self.invalidator,
            code_length=settings.SHORT_CODE_LENGTH,
        )

        self._generator = generator
        self._fetcher: Optional[ContentFetcher] = None
        self._worker: Optional[AnalysisWorker] = None

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        generator: Optional[TextGenerator] = None,
        create_tables: bool = True,
    ) -> "LinklyCore":
        settings = settings or get_settings()

        engine = create_db_engine(settings.DATABASE_URL)
        if create_tables:
            init_db(engine)

        redis_client = Redis.from_url(settings.REDIS_URL)
        await redis_client.ping()

        core = cls(settings, redis_client, make_session_factory(engine), generator)
        core.clients.config.log_status()
        return core

    @property
    def worker(self) -> AnalysisWorker:
        """The analysis worker. Needs a text generator or ANTHROPIC_API_KEY."""
        if self._worker is None:
            generator = self._generator or self.clients.claude
            if generator is None:
                raise ValueError("ANTHROPIC_API_KEY not provided")

            self._fetcher = ContentFetcher.from_settings(self.settings, self.clients.firecrawl)
            engine = AnalysisEngine.from_settings(self.settings, generator)
            self._worker = AnalysisWorker(
                self.links,
                self._fetcher,
                engine,
                self.invalidator,
                self.system_collections,
                fetch_max_chars=self.settings.FETCH_MAX_CHARS,
            )
        return self._worker

    def consumer(self, concurrency: Optional[int] = None) -> QueueConsumer:
        worker = self.worker
        return QueueConsumer(
            self.queue,
            worker.handle_job,
            concurrency=concurrency or self.settings.WORKER_CONCURRENCY,
            poll_interval=self.settings.WORKER_POLL_INTERVAL_SECONDS,
            stall_timeout=self.settings.JOB_STALL_TIMEOUT_SECONDS,
            on_terminal_failure=worker.on_terminal_failure,
        )

    async def health(self) -> Dict:
        """Database reachability, cache health and queue counts."""
        database_ok = await asyncio.to_thread(check_db_connection, self.session_factory)
        cache_health = await self.cache.health_check()
        return {
            "healthy": database_ok and cache_health["healthy"],
            "database": {"healthy": database_ok},
            "cache": cache_health,
            "queue": await self.queue.counts(),
        }

    async def close(self):
        await self.resolver.drain()
        if self._fetcher is not None:
            await self._fetcher.close()
        await self.clients.close()
        await self.redis.aclose()
        logger.info("Link core closed")
