#!/usr/bin/env python3
"""
Analysis Worker Runner

Consumes analyze-link jobs until interrupted.

Usage:
    # Set environment variables first (or put them in .env):
    export DATABASE_URL=postgresql://...
    export REDIS_URL=redis://127.0.0.1:6379/0
    export ANTHROPIC_API_KEY=your_key

    python scripts/run_worker.py
    python scripts/run_worker.py --concurrency 4

    # Check health and inspect the queue without consuming:
    python scripts/run_worker.py --stats
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from linkly.bootstrap import LinklyCore
from linkly.utils.config import get_settings, configure_logging

logger = logging.getLogger(__name__)


async def show_stats(core: LinklyCore):
    health = await core.health()
    print(f"Database: {'ok' if health['database']['healthy'] else 'UNREACHABLE'}")
    print(f"Cache:    {health['cache']['status']}")

    print(f"\nQueue '{core.queue.name}':")
    for state, count in health["queue"].items():
        print(f"  {state:<10} {count}")

    failed = await core.queue.failed_jobs(limit=10)
    if failed:
        print("\nRecent terminal failures:")
        for job in failed:
            print(f"  {job.job_id}  link={job.link_id}  attempts={job.attempts_made}  {job.last_error}")


async def run_worker(concurrency: int = None, stats_only: bool = False):
    """Start the consumer pool, or print queue stats."""
    core = await LinklyCore.create()
    try:
        if stats_only:
            await show_stats(core)
            return

        consumer = core.consumer(concurrency)
        logger.info(f"Analysis worker started ({consumer.concurrency} consumers)")
        await consumer.run_forever()
    finally:
        await core.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run the link analysis worker"
    )
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help="Concurrent jobs (default: WORKER_CONCURRENCY)"
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print health, queue counts and recent failures, then exit"
    )

    args = parser.parse_args()

    load_dotenv()
    configure_logging(get_settings().LOG_LEVEL)

    try:
        asyncio.run(run_worker(args.concurrency, args.stats))
    except KeyboardInterrupt:
        logger.info("Worker interrupted, shutting down")


if __name__ == "__main__":
    main()
