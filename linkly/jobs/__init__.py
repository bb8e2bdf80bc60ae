"""
Background analysis jobs: the Redis queue and the worker that consumes it.
"""

from .queue import (
    ANALYSIS_QUEUE,
    ANALYZE_LINK_JOB,
    Job,
    JobState,
    QueueConsumer,
    RedisJobQueue,
    RetryPolicy,
)
from .worker import AnalysisWorker, WorkerRun, WorkerState

__all__ = [
    "ANALYSIS_QUEUE",
    "ANALYZE_LINK_JOB",
    "Job",
    "JobState",
    "QueueConsumer",
    "RedisJobQueue",
    "RetryPolicy",
    "AnalysisWorker",
    "WorkerRun",
    "WorkerState",
]
