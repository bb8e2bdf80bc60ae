"""
Job Queue

Durable, at-least-once work queue on Redis with exponential backoff.

Layout under `{namespace}:queue:{name}`:
- :waiting       list, LPUSH to enqueue, taken from the right
- :active        list of reserved job ids
- :active_since  sorted set, job id -> reservation time (stall detection)
- :delayed       sorted set, job id -> time the retry is due
- :jobs          hash, job id -> job JSON
- :failed        list of FAILED-TERMINAL job ids (operator visibility)
- :stats         hash of counters

Job states: QUEUED -> RUNNING -> (COMPLETED | RETRY_SCHEDULED | FAILED_TERMINAL).
A RETRY_SCHEDULED job returns to QUEUED when its delay has elapsed.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from redis.asyncio import Redis

from linkly.errors import JobRedeliveryExhausted, LinklyError, PermanentJobError

logger = logging.getLogger(__name__)

ANALYSIS_QUEUE = "link-analysis"
ANALYZE_LINK_JOB = "analyze-link"


class JobState(Enum):
    """Job lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_TERMINAL = "failed_terminal"


@dataclass
class RetryPolicy:
    """
    Queue-level redelivery policy.

    `attempts` counts every run including the first, so the default of 3
    means two redeliveries, 5s then 10s after the failures.
    """
    attempts: int = 3
    backoff_seconds: float = 5.0
    backoff_type: str = "exponential"  # or "fixed"
    max_backoff_seconds: float = 3600.0

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next run, given how many runs have failed."""
        if self.backoff_type == "fixed":
            delay = self.backoff_seconds
        else:
            delay = self.backoff_seconds * (2 ** max(0, attempts_made - 1))
        return min(delay, self.max_backoff_seconds)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(attempts=settings.JOB_ATTEMPTS, backoff_seconds=settings.JOB_BACKOFF_SECONDS)


@dataclass
class Job:
    """Queued unit of work."""
    job_id: str
    name: str
    data: Dict[str, Any]
    state: JobState = JobState.QUEUED
    attempts_made: int = 0
    max_attempts: int = 3
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    next_run_at: Optional[float] = None
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def link_id(self) -> Optional[str]:
        return self.data.get("link_id")

    @property
    def is_terminal(self) -> bool:
        return self.state == JobState.FAILED_TERMINAL

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Job":
        data = dict(data)
        data["state"] = JobState(data["state"])
        return cls(**data)

    def record_error(self, error: str):
        self.last_error = error[:1000]
        self.errors.append(self.last_error)
        # Keep the last few only
        self.errors = self.errors[-10:]


def _decode(value: Union[bytes, str, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisJobQueue:
    """
    At-least-once queue on redis.asyncio.

    Usage:
        queue = RedisJobQueue(redis_client)
        await queue.enqueue_analysis(link_id)

        job = await queue.reserve()
        try:
            ...
            await queue.complete(job)
        except Exception as e:
            await queue.fail(job, str(e))
    """

    def __init__(
        self,
        client: Redis,
        name: str = ANALYSIS_QUEUE,
        retry_policy: Optional[RetryPolicy] = None,
        namespace: str = "linkly",
    ):
        self.client = client
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.prefix = f"{namespace}:queue:{name}"

    def key(self, suffix: str) -> str:
        return f"{self.prefix}:{suffix}"

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    async def _save(self, job: Job):
        job.updated_at = time.time()
        await self.client.hset(self.key("jobs"), job.job_id, json.dumps(job.to_dict()))

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.client.hget(self.key("jobs"), job_id)
        if raw is None:
            return None
        return Job.from_dict(json.loads(_decode(raw)))

    async def _release(self, job_id: str) -> int:
        """Take a job out of the active set. Returns how many entries were removed."""
        removed = await self.client.lrem(self.key("active"), 1, job_id)
        await self.client.zrem(self.key("active_since"), job_id)
        return removed

    # =========================================================================
    # Producer side
    # =========================================================================

    async def enqueue(self, name: str, data: Dict[str, Any], job_id: Optional[str] = None) -> Job:
        """
        Add a job to the waiting list.

        Duplicate enqueues for the same payload are accepted; handlers
        must be idempotent.
        """
        job = Job(
            job_id=job_id or uuid.uuid4().hex,
            name=name,
            data=dict(data),
            max_attempts=self.retry_policy.attempts,
        )
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self.key("jobs"), job.job_id, json.dumps(job.to_dict()))
            pipe.lpush(self.key("waiting"), job.job_id)
            await pipe.execute()

        logger.info(f"Enqueued {name} job {job.job_id} on {self.name}")
        return job

    async def enqueue_analysis(self, link_id: Any) -> Job:
        return await self.enqueue(ANALYZE_LINK_JOB, {"link_id": str(link_id)})

    # =========================================================================
    # Consumer side
    # =========================================================================

    async def promote_due(self, now: Optional[float] = None) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        now = time.time() if now is None else now
        due = await self.client.zrangebyscore(self.key("delayed"), 0, now)
        promoted = 0

        for raw_id in due:
            job_id = _decode(raw_id)
            # Whoever removes it from the delayed set owns the promotion
            if not await self.client.zrem(self.key("delayed"), job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.state = JobState.QUEUED
            job.next_run_at = None
            await self._save(job)
            await self.client.lpush(self.key("waiting"), job_id)
            promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs on {self.name}")
        return promoted

    async def reserve(self) -> Optional[Job]:
        """Take the oldest waiting job, marking it RUNNING. None when idle."""
        await self.promote_due()

        raw_id = await self.client.lmove(self.key("waiting"), self.key("active"), "RIGHT", "LEFT")
        if raw_id is None:
            return None

        job_id = _decode(raw_id)
        await self.client.zadd(self.key("active_since"), {job_id: time.time()})
        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"Dropping job {job_id}: no payload stored")
            await self._release(job_id)
            return None

        job.state = JobState.RUNNING
        job.attempts_made += 1
        await self._save(job)
        return job

    async def complete(self, job: Job) -> Job:
        await self._release(job.job_id)
        job.state = JobState.COMPLETED
        await self.client.hdel(self.key("jobs"), job.job_id)
        await self.client.hincrby(self.key("stats"), "completed", 1)
        return job

    async def fail(self, job: Job, error: str) -> Job:
        """
        Record a failed run: schedule a backoff retry, or mark
        FAILED_TERMINAL once the attempt budget is spent.
        """
        await self._release(job.job_id)
        job.record_error(error)

        if job.attempts_made >= job.max_attempts:
            return await self._mark_terminal(job)

        delay = self.retry_policy.delay_for(job.attempts_made)
        job.state = JobState.RETRY_SCHEDULED
        job.next_run_at = time.time() + delay
        await self._save(job)
        await self.client.zadd(self.key("delayed"), {job.job_id: job.next_run_at})

        logger.warning(
            f"Job {job.job_id} failed (attempt {job.attempts_made}/{job.max_attempts}), "
            f"retrying in {delay:.0f}s: {error}"
        )
        return job

    async def fail_permanently(self, job: Job, error: str) -> Job:
        """Fail without redelivery, whatever attempts remain."""
        await self._release(job.job_id)
        job.record_error(error)
        return await self._mark_terminal(job)

    async def _mark_terminal(self, job: Job) -> Job:
        job.state = JobState.FAILED_TERMINAL
        job.next_run_at = None
        await self._save(job)
        await self.client.rpush(self.key("failed"), job.job_id)
        logger.error(
            f"Job {job.job_id} FAILED_TERMINAL after {job.attempts_made} attempts: {job.last_error}"
        )
        return job

    async def requeue_stalled(self, stall_timeout: float, now: Optional[float] = None) -> List[Job]:
        """
        Recover jobs reserved by a consumer that died mid-run.

        A stalled run counts as an attempt: jobs with attempts left go
        back to the front of the queue, the rest become FAILED_TERMINAL.

        Active ids without a reservation time (the consumer died between
        taking the job and stamping it) start their stall clock here.
        """
        now = time.time() if now is None else now
        await self._adopt_unstamped(now)
        stalled = await self.client.zrangebyscore(self.key("active_since"), 0, now - stall_timeout)
        recovered = []

        for raw_id in stalled:
            job_id = _decode(raw_id)
            if not await self._release(job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue

            if job.state != JobState.RUNNING:
                # Reserved but never marked RUNNING
                job.attempts_made += 1
            job.record_error(f"stalled: no result after {stall_timeout:.0f}s")
            if job.attempts_made >= job.max_attempts:
                await self._mark_terminal(job)
            else:
                job.state = JobState.QUEUED
                await self._save(job)
                await self.client.rpush(self.key("waiting"), job_id)
                logger.warning(f"Requeued stalled job {job_id}")
            recovered.append(job)

        return recovered

    async def _adopt_unstamped(self, now: float) -> int:
        adopted = 0
        for raw_id in await self.client.lrange(self.key("active"), 0, -1):
            job_id = _decode(raw_id)
            if await self.client.zadd(self.key("active_since"), {job_id: now}, nx=True):
                adopted += 1
                logger.warning(f"Active job {job_id} had no reservation time, watching it for stalls")
        return adopted

    # =========================================================================
    # Inspection
    # =========================================================================

    async def counts(self) -> Dict[str, int]:
        completed = await self.client.hget(self.key("stats"), "completed")
        return {
            "waiting": await self.client.llen(self.key("waiting")),
            "active": await self.client.llen(self.key("active")),
            "delayed": await self.client.zcard(self.key("delayed")),
            "failed": await self.client.llen(self.key("failed")),
            "completed": int(_decode(completed) or 0),
        }

    async def failed_jobs(self, limit: int = 50) -> List[Job]:
        """Most recent FAILED_TERMINAL jobs, newest first."""
        ids = await self.client.lrange(self.key("failed"), -limit, -1)
        jobs = []
        for raw_id in reversed(ids):
            job = await self.get_job(_decode(raw_id))
            if job is not None:
                jobs.append(job)
        return jobs


JobHandler = Callable[[Job], Awaitable[Any]]
TerminalFailureCallback = Callable[[Job, LinklyError], Awaitable[None]]


class QueueConsumer:
    """
    Runs `concurrency` consumer tasks against a queue.

    Each task processes one job to completion before reserving the next.
    Handler exceptions are recorded on the job and never stop the loop;
    a PermanentJobError skips redelivery.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        handler: JobHandler,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        stall_timeout: float = 300.0,
        on_terminal_failure: Optional[TerminalFailureCallback] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.stall_timeout = stall_timeout
        self.on_terminal_failure = on_terminal_failure

        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    async def process_next(self) -> Optional[Job]:
        """Reserve and handle one job. Returns None when the queue is idle."""
        job = await self.queue.reserve()
        if job is None:
            return None
        return await self._handle(job)

    async def _handle(self, job: Job) -> Job:
        logger.info(f"Processing {job.name} job {job.job_id} (attempt {job.attempts_made})")
        try:
            await self.handler(job)
        except PermanentJobError as e:
            self.failed += 1
            job = await self.queue.fail_permanently(job, str(e))
            await self._notify_terminal(job, e)
            return job
        except Exception as e:
            self.failed += 1
            error = f"{type(e).__name__}: {e}"
            job = await self.queue.fail(job, error)
            if job.is_terminal:
                await self._notify_terminal(
                    job, JobRedeliveryExhausted(job.job_id, job.attempts_made, error)
                )
            return job

        self.processed += 1
        logger.info(f"Job {job.job_id} completed")
        return await self.queue.complete(job)

    async def _notify_terminal(self, job: Job, error: LinklyError):
        if self.on_terminal_failure is None:
            return
        try:
            await self.on_terminal_failure(job, error)
        except Exception as e:
            logger.error(f"Terminal failure callback raised for job {job.job_id}: {e}")

    async def _consume(self, index: int):
        logger.info(f"Consumer {index} started on {self.queue.name}")
        while not self._stopping.is_set():
            try:
                job = await self.process_next()
            except Exception as e:
                logger.error(f"Consumer {index} error: {e}")
                job = None

            if job is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Consumer {index} stopped")

    async def _watch_stalled(self):
        interval = max(1.0, min(self.stall_timeout / 2, 30.0))
        while not self._stopping.is_set():
            try:
                for job in await self.queue.requeue_stalled(self.stall_timeout):
                    if job.is_terminal:
                        await self._notify_terminal(
                            job,
                            JobRedeliveryExhausted(job.job_id, job.attempts_made, job.last_error or ""),
                        )
            except Exception as e:
                logger.error(f"Stalled job check failed: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def start(self):
        """Spawn the consumer tasks on the running loop."""
        if self._tasks:
            return
        self._stopping.clear()
        for index in range(self.concurrency):
            self._tasks.add(asyncio.create_task(self._consume(index)))
        self._tasks.add(asyncio.create_task(self._watch_stalled()))
        logger.info(f"Started {self.concurrency} consumers on {self.queue.name}")

    async def stop(self):
        """Let in-flight jobs finish, then stop."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def run_forever(self):
        self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()
