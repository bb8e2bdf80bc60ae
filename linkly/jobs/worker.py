"""
Analysis Worker

Consumes analyze-link jobs:

    RECEIVED -> FETCHING -> ANALYZING -> PERSISTING -> DONE

Any state before DONE may end in FAILED instead.

- RECEIVED: load the link; a missing link fails the job permanently
- FETCHING: absent content is not a failure, the engine falls back
- ANALYZING: errors mark the link FAILED and go back to the queue
- PERSISTING: results + COMPLETED, cache invalidation, then auto-filing
  and owner tags (those two only log on failure; a half-applied filing
  is resynced from the link side)

PERSISTING is idempotent, so a redelivered job that races a slow first
run rewrites the same result.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from linkly.analyzer.engine import AnalysisEngine
from linkly.analyzer.schemas import AnalysisResult
from linkly.cache.invalidation import CacheEvent, LinkCacheInvalidator
from linkly.content.fetcher import ContentFetcher
from linkly.database.models import AnalysisStatus
from linkly.database.repository import IdLike, LinkRepository
from linkly.errors import LinklyError, MembershipInconsistency, PermanentJobError
from linkly.services.system_collections import SystemCollectionService
from .queue import ANALYZE_LINK_JOB, Job

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """Per-job processing states."""
    RECEIVED = "received"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class WorkerRun:
    """Trace of one job run."""
    link_id: str
    state: WorkerState = WorkerState.RECEIVED
    transitions: List[WorkerState] = field(default_factory=lambda: [WorkerState.RECEIVED])
    result: Optional[AnalysisResult] = None
    collection_id: Optional[Any] = None
    error: Optional[str] = None

    def advance(self, state: WorkerState):
        self.state = state
        self.transitions.append(state)


class AnalysisWorker:
    """Runs the analysis pipeline for one link at a time."""

    def __init__(
        self,
        links: LinkRepository,
        fetcher: ContentFetcher,
        engine: AnalysisEngine,
        invalidator: LinkCacheInvalidator,
        system_collections: SystemCollectionService,
        fetch_max_chars: Optional[int] = None,
    ):
        self.links = links
        self.fetcher = fetcher
        self.engine = engine
        self.invalidator = invalidator
        self.system_collections = system_collections
        self.fetch_max_chars = fetch_max_chars

    async def handle_job(self, job: Job) -> WorkerRun:
        """Queue handler."""
        if job.name != ANALYZE_LINK_JOB or not job.link_id:
            raise PermanentJobError(f"Unsupported job {job.name} with data {job.data}")
        return await self.process(job.link_id)

    async def process(self, link_id: IdLike) -> WorkerRun:
        """
        Analyze one link end to end.

        Raises:
            PermanentJobError: the link does not exist
            Exception: analysis or persistence failed; the link is FAILED
                and the queue decides about redelivery
        """
        run = WorkerRun(link_id=str(link_id))

        link = await asyncio.to_thread(self.links.get_by_id, link_id)
        if link is None:
            run.advance(WorkerState.FAILED)
            raise PermanentJobError(f"Link not found: {link_id}")

        try:
            run.advance(WorkerState.FETCHING)
            text = await self.fetcher.fetch(link["destination"], max_chars=self.fetch_max_chars)

            run.advance(WorkerState.ANALYZING)
            run.result = await self.engine.analyze(text)

            run.advance(WorkerState.PERSISTING)
            updated = await asyncio.to_thread(
                self.links.update_fields, link["id"], run.result.to_link_patch()
            )
        except Exception as e:
            run.error = f"{type(e).__name__}: {e}"
            run.advance(WorkerState.FAILED)
            logger.error(f"Analysis of link {link['id']} failed in {run.transitions[-2].value}: {e}")
            await self.mark_failed(link["id"], run.error)
            raise

        if not updated:
            # Deleted while we were analyzing
            logger.warning(f"Link {link['id']} disappeared before results were saved")
            run.advance(WorkerState.DONE)
            return run

        current = await asyncio.to_thread(self.links.get_by_id, link["id"])
        codes = {link["code"]} | ({current["code"]} if current else set())
        await self.invalidator.handle_event(CacheEvent.LINK_ANALYZED, codes=codes)

        await self._file(link, run)

        run.advance(WorkerState.DONE)
        logger.info(
            f"Link {link['id']} analyzed: rating {run.result.safety_rating}, "
            f"category {run.result.category}"
        )
        return run

    async def _file(self, link: dict, run: WorkerRun):
        try:
            run.collection_id = await asyncio.to_thread(
                self.system_collections.assign_link_to_system_collection,
                link["owner_id"],
                link["id"],
                run.result.category,
            )
        except MembershipInconsistency as e:
            logger.error(f"Filing link {link['id']} half-applied, resyncing: {e}")
            await self._resync(link["id"])
        except Exception as e:
            logger.error(f"Failed to file link {link['id']} into a system collection: {e}")

        if not run.result.tags:
            return
        try:
            await asyncio.to_thread(
                self.system_collections.add_link_tags_to_owner, link["owner_id"], run.result.tags
            )
        except Exception as e:
            logger.error(f"Failed to add tags of link {link['id']} to owner: {e}")

    async def _resync(self, link_id: IdLike):
        try:
            drift = await asyncio.to_thread(
                self.system_collections.membership.resync_membership, link_id
            )
        except Exception as e:
            logger.error(f"Membership resync of link {link_id} failed: {e}")
            return
        if drift.consistent:
            logger.info(f"Membership of link {link_id} was already consistent")

    async def mark_failed(self, link_id: IdLike, error: str):
        """Set the link FAILED and drop its projection."""
        link = await asyncio.to_thread(self.links.get_by_id, link_id)
        if link is None:
            return
        await asyncio.to_thread(self.links.set_status, link["id"], AnalysisStatus.FAILED, error)
        await self.invalidator.handle_event(CacheEvent.LINK_ANALYSIS_FAILED, code=link["code"])

    async def on_terminal_failure(self, job: Job, error: LinklyError):
        """Queue callback: retries are spent, FAILED becomes the final state."""
        logger.error(f"Giving up on link {job.link_id}: {error}")
        if job.link_id:
            await self.mark_failed(job.link_id, str(error))
