"""
Tests for the analysis worker.

Covers the worker state machine, persistence and cache invalidation,
auto-filing into system collections, and the full path through the
queue consumer with redelivery.
"""

import time
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from conftest import ScriptedGenerator, combined_reply
from linkly.analyzer.engine import AnalysisEngine
from linkly.errors import AnalysisProviderFatal, PermanentJobError
from linkly.jobs.queue import ANALYZE_LINK_JOB, Job, JobState, QueueConsumer
from linkly.jobs.worker import AnalysisWorker, WorkerState
from linkly.services.resolver import ResolveOutcome

OWNER = "owner-1"


@pytest.fixture
def fetcher():
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=None)
    return fetcher


@pytest.fixture
def make_worker(link_repo, fetcher, invalidator, system_collections):
    def _make(generator):
        engine = AnalysisEngine(generator, pacing_seconds=0)
        return AnalysisWorker(link_repo, fetcher, engine, invalidator, system_collections)
    return _make


@pytest.fixture
def link(link_repo):
    return link_repo.create(OWNER, "abc12", "https://example.com/post")


# =============================================================================
# PIPELINE
# =============================================================================

class TestProcess:
    """Test one job run end to end."""

    @pytest.mark.asyncio
    async def test_unreachable_destination_gets_fallback(
        self, make_worker, link, link_repo, collection_repo, resolver
    ):
        generator = ScriptedGenerator()
        worker = make_worker(generator)

        run = await worker.process(link["id"])

        assert run.transitions == [
            WorkerState.RECEIVED,
            WorkerState.FETCHING,
            WorkerState.ANALYZING,
            WorkerState.PERSISTING,
            WorkerState.DONE,
        ]
        assert generator.calls == []

        stored = link_repo.get_by_id(link["id"])
        assert stored["analysis_status"] == "COMPLETED"
        assert stored["safety_rating"] == 3
        assert stored["classification"]["category"] == "Other"
        assert stored["summary"] == "Could not extract sufficient text content from this URL."
        assert stored["analyzed_at"] is not None

        other = collection_repo.find_system_collection(OWNER, "Other")
        assert run.collection_id == other["id"]
        assert stored["collection_ids"] == [other["id"]]
        assert collection_repo.get_member_ids(other["id"]) == {link["id"]}

        result = await resolver.resolve("abc12")
        assert result.outcome == ResolveOutcome.DIRECT

    @pytest.mark.asyncio
    async def test_results_and_tags_persisted(
        self, make_worker, fetcher, link, link_repo, collection_repo, page_text
    ):
        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator([combined_reply(tags=["python", "packaging"])]))

        run = await worker.process(str(link["id"]))

        stored = link_repo.get_by_id(link["id"])
        assert stored["summary"] == "A blog post about Python packaging."
        assert stored["tags"] == ["python", "packaging"]
        assert stored["safety_rating"] == 4
        assert stored["classification"] == {
            "category": "Programming/Tech Blog",
            "confidence": 0.9,
            "reason": "Discusses code.",
        }
        assert link_repo.get_owner_tags(OWNER) == ["packaging", "python"]

        tech = collection_repo.find_system_collection(OWNER, "Programming/Tech Blog")
        assert run.collection_id == tech["id"]
        fetcher.fetch.assert_awaited_once_with("https://example.com/post", max_chars=None)

    @pytest.mark.asyncio
    async def test_unsafe_result_replaces_cached_projection(
        self, make_worker, fetcher, link, resolver, page_text
    ):
        before = await resolver.resolve("abc12")
        assert before.outcome == ResolveOutcome.DIRECT

        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator([
            combined_reply(rating=1, category="Scam/Phishing/Unsafe", justification="Fake login form."),
        ]))
        await worker.process(link["id"])

        after = await resolver.resolve("abc12")
        assert after.outcome == ResolveOutcome.WARNING
        assert after.justification == "Fake login form."
        assert not after.from_cache

    @pytest.mark.asyncio
    async def test_reprocessing_is_idempotent(
        self, make_worker, fetcher, link, link_repo, collection_repo, page_text
    ):
        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator(default=combined_reply()))

        await worker.process(link["id"])
        first = link_repo.get_by_id(link["id"])
        await worker.process(link["id"])
        second = link_repo.get_by_id(link["id"])

        for key in ("analysis_status", "summary", "tags", "safety_rating", "classification", "collection_ids"):
            assert first[key] == second[key]
        assert len(second["collection_ids"]) == 1
        assert collection_repo.get_member_ids(second["collection_ids"][0]) == {link["id"]}

    @pytest.mark.asyncio
    async def test_reanalysis_moves_link_to_new_category(
        self, make_worker, fetcher, link, link_repo, collection_repo, membership, page_text
    ):
        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator([
            combined_reply(category="Programming/Tech Blog"),
            combined_reply(rating=1, category="Scam/Phishing/Unsafe"),
        ]))

        await worker.process(link["id"])
        run = await worker.process(link["id"])

        tech = collection_repo.find_system_collection(OWNER, "Programming/Tech Blog")
        scam = collection_repo.find_system_collection(OWNER, "Scam/Phishing/Unsafe")
        assert run.collection_id == scam["id"]
        assert link_repo.get_by_id(link["id"])["collection_ids"] == [scam["id"]]
        assert collection_repo.get_member_ids(scam["id"]) == {link["id"]}
        assert collection_repo.get_member_ids(tech["id"]) == set()
        assert membership.verify_membership(link["id"]).consistent

    @pytest.mark.asyncio
    async def test_missing_link_is_permanent(self, make_worker):
        worker = make_worker(ScriptedGenerator())
        with pytest.raises(PermanentJobError):
            await worker.process(uuid4())

    @pytest.mark.asyncio
    async def test_unsupported_job_is_permanent(self, make_worker):
        worker = make_worker(ScriptedGenerator())
        with pytest.raises(PermanentJobError):
            await worker.handle_job(Job(job_id="j1", name="send-email", data={"link_id": "x"}))
        with pytest.raises(PermanentJobError):
            await worker.handle_job(Job(job_id="j2", name=ANALYZE_LINK_JOB, data={}))


# =============================================================================
# FAILURES
# =============================================================================

class TestFailures:
    """Test failure handling inside one run."""

    @pytest.mark.asyncio
    async def test_analysis_error_marks_failed_and_reraises(
        self, make_worker, fetcher, link, link_repo, cache, resolver, page_text
    ):
        await resolver.resolve("abc12")
        assert await cache.get_link_projection("abc12") is not None

        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator([AnalysisProviderFatal("invalid api key")]))

        with pytest.raises(AnalysisProviderFatal):
            await worker.process(link["id"])

        stored = link_repo.get_by_id(link["id"])
        assert stored["analysis_status"] == "FAILED"
        assert "invalid api key" in stored["analysis_error"]
        assert await cache.get_link_projection("abc12") is None

        result = await resolver.resolve("abc12")
        assert result.outcome == ResolveOutcome.DIRECT

    @pytest.mark.asyncio
    async def test_link_deleted_during_analysis(
        self, make_worker, fetcher, link, link_repo, collection_repo, page_text
    ):
        def delete_then_reply(prompt, system):
            link_repo.delete(link["id"])
            return combined_reply()

        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator([delete_then_reply]))

        run = await worker.process(link["id"])

        assert run.state == WorkerState.DONE
        assert run.collection_id is None
        assert collection_repo.find_by_owner(OWNER) == []

    @pytest.mark.asyncio
    async def test_filing_failure_does_not_fail_the_job(
        self, make_worker, link, link_repo, system_collections
    ):
        worker = make_worker(ScriptedGenerator())

        with patch.object(
            system_collections,
            "assign_link_to_system_collection",
            side_effect=RuntimeError("database is locked"),
        ):
            run = await worker.process(link["id"])

        assert run.state == WorkerState.DONE
        assert link_repo.get_by_id(link["id"])["analysis_status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_half_applied_filing_is_resynced(
        self, make_worker, link, link_repo, collection_repo, membership
    ):
        real_add_member = collection_repo.add_member
        calls = []

        def add_member_failing_once(collection_id, link_id):
            calls.append(collection_id)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            return real_add_member(collection_id, link_id)

        worker = make_worker(ScriptedGenerator())
        with patch.object(collection_repo, "add_member", side_effect=add_member_failing_once):
            run = await worker.process(link["id"])

        other = collection_repo.find_system_collection(OWNER, "Other")
        assert run.state == WorkerState.DONE
        assert len(calls) == 2
        assert link_repo.get_collection_ids(link["id"]) == {other["id"]}
        assert collection_repo.get_member_ids(other["id"]) == {link["id"]}
        assert membership.verify_membership(link["id"]).consistent

    @pytest.mark.asyncio
    async def test_failed_resync_does_not_fail_the_job(
        self, make_worker, link, link_repo, collection_repo, membership
    ):
        worker = make_worker(ScriptedGenerator())
        with patch.object(collection_repo, "add_member", side_effect=RuntimeError("database is locked")):
            run = await worker.process(link["id"])

        assert run.state == WorkerState.DONE
        assert link_repo.get_by_id(link["id"])["analysis_status"] == "COMPLETED"
        assert not membership.verify_membership(link["id"]).consistent


# =============================================================================
# QUEUE INTEGRATION
# =============================================================================

class TestThroughQueue:
    """Jobs flow from the queue through the worker."""

    @pytest.mark.asyncio
    async def test_successful_job_completes(self, make_worker, queue, link, link_repo):
        worker = make_worker(ScriptedGenerator())
        consumer = QueueConsumer(queue, worker.handle_job, on_terminal_failure=worker.on_terminal_failure)

        await queue.enqueue_analysis(link["id"])
        job = await consumer.process_next()

        assert job.state == JobState.COMPLETED
        assert link_repo.get_by_id(link["id"])["analysis_status"] == "COMPLETED"
        assert await consumer.process_next() is None

    @pytest.mark.asyncio
    async def test_failing_job_exhausts_retries(
        self, make_worker, fetcher, queue, link, link_repo, page_text
    ):
        fetcher.fetch.return_value = page_text
        generator = ScriptedGenerator(default=AnalysisProviderFatal("provider down"))
        worker = make_worker(generator)
        consumer = QueueConsumer(queue, worker.handle_job, on_terminal_failure=worker.on_terminal_failure)

        await queue.enqueue_analysis(link["id"])

        job = await consumer.process_next()
        assert job.state == JobState.RETRY_SCHEDULED
        assert link_repo.get_by_id(link["id"])["analysis_status"] == "FAILED"

        for _ in range(2):
            await queue.promote_due(now=time.time() + 3600)
            job = await consumer.process_next()

        assert job.state == JobState.FAILED_TERMINAL
        assert job.attempts_made == 3
        assert len(generator.calls) == 3
        assert await consumer.process_next() is None

        stored = link_repo.get_by_id(link["id"])
        assert stored["analysis_status"] == "FAILED"
        assert "provider down" in stored["analysis_error"]
        assert [j.job_id for j in await queue.failed_jobs()] == [job.job_id]

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_can_succeed(
        self, make_worker, fetcher, queue, link, link_repo, page_text
    ):
        fetcher.fetch.return_value = page_text
        worker = make_worker(ScriptedGenerator([AnalysisProviderFatal("blip"), combined_reply()]))
        consumer = QueueConsumer(queue, worker.handle_job)

        await queue.enqueue_analysis(link["id"])
        await consumer.process_next()
        await queue.promote_due(now=time.time() + 3600)
        job = await consumer.process_next()

        assert job.state == JobState.COMPLETED
        stored = link_repo.get_by_id(link["id"])
        assert stored["analysis_status"] == "COMPLETED"
        assert stored["analysis_error"] is None

    @pytest.mark.asyncio
    async def test_job_for_deleted_link_fails_without_retry(self, make_worker, queue):
        worker = make_worker(ScriptedGenerator())
        consumer = QueueConsumer(queue, worker.handle_job, on_terminal_failure=worker.on_terminal_failure)

        await queue.enqueue_analysis(uuid4())
        job = await consumer.process_next()

        assert job.state == JobState.FAILED_TERMINAL
        assert job.attempts_made == 1
