"""Command line entry point: process runners and operator queue tools.

Usage:
    listing-tracker init-db
    listing-tracker discover [--area milano --area roma] [--max-pages 5]
    listing-tracker worker
    listing-tracker verifier [--hours 24]
    listing-tracker scheduler
    listing-tracker health
    listing-tracker queue stats|clear|retry-failed|show-failed
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

from listing_tracker import __version__
from listing_tracker.config import settings
from listing_tracker.db.store import TrackerStore
from listing_tracker.ingest.base import BaseCatalogFetcher
from listing_tracker.logging_config import setup_logging
from listing_tracker.notify.core_client import CoreServiceClient
from listing_tracker.worker.run_lock import RunLock
from listing_tracker.worker.runtime import StopFlag, run_process, start_metrics_server
from listing_tracker.worker.work_queue import WorkQueue

logger = logging.getLogger(__name__)

SHOW_FAILED_LIMIT = 20


@dataclass
class Components:
    """Connections shared by one process."""

    queue: WorkQueue
    store: TrackerStore
    fetcher: BaseCatalogFetcher
    ingestion: CoreServiceClient
    lock: RunLock

    async def close(self) -> None:
        await self.fetcher.close()
        await self.ingestion.close()
        await self.lock.close()
        await self.queue.close()


def build_components() -> Components:
    from listing_tracker.ingest.http_fetcher import HttpCatalogFetcher

    return Components(
        queue=WorkQueue(),
        store=TrackerStore(),
        fetcher=HttpCatalogFetcher(),
        ingestion=CoreServiceClient(),
        lock=RunLock(),
    )


async def _dispose_engine() -> None:
    from listing_tracker.db.session import engine

    await engine.dispose()


async def _run_with_components(name: str, body) -> int:
    components = build_components()

    async def cleanup():
        await components.close()
        await _dispose_engine()

    return await run_process(name, lambda stop: body(components, stop), cleanup)


# ----------------------------------------------------------------------
# Process commands
# ----------------------------------------------------------------------

async def cmd_init_db(args: argparse.Namespace) -> int:
    from listing_tracker.db.session import init_db

    try:
        await init_db()
    finally:
        await _dispose_engine()
    logger.info("Database initialized")
    return 0


async def cmd_discover(args: argparse.Namespace) -> int:
    from listing_tracker.worker.coordinator import DiscoveryCoordinator

    async def body(c: Components, stop: StopFlag):
        coordinator = DiscoveryCoordinator(c.queue, c.store, c.fetcher, lock=c.lock)
        counters = await coordinator.run(areas=args.area, max_pages=args.max_pages, stop=stop)
        if counters is None:
            raise RuntimeError("Another discovery pass holds the run lock")

    return await _run_with_components("coordinator", body)


async def cmd_worker(args: argparse.Namespace) -> int:
    from listing_tracker.worker.detail_worker import DetailWorker

    async def body(c: Components, stop: StopFlag):
        start_metrics_server(settings.metrics_port)
        worker = DetailWorker(c.queue, c.store, c.fetcher, c.ingestion)
        await worker.run(stop=stop, exit_when_idle=False if args.forever else None)

    return await _run_with_components("worker", body)


async def cmd_verifier(args: argparse.Namespace) -> int:
    from listing_tracker.worker.verifier import Verifier

    async def body(c: Components, stop: StopFlag):
        start_metrics_server(settings.metrics_port)
        verifier = Verifier(c.queue, c.store, c.fetcher, c.ingestion)
        await verifier.run(stop=stop, hours_threshold=args.hours)

    return await _run_with_components("verifier", body)


async def cmd_scheduler(args: argparse.Namespace) -> int:
    from listing_tracker.worker.coordinator import DiscoveryCoordinator
    from listing_tracker.worker.health import HealthProbe
    from listing_tracker.worker.scheduler import SchedulerJobs, setup_scheduler

    async def body(c: Components, stop: StopFlag):
        start_metrics_server(settings.metrics_port)
        jobs = SchedulerJobs(
            coordinator=DiscoveryCoordinator(c.queue, c.store, c.fetcher, lock=c.lock),
            store=c.store,
            health_probe=HealthProbe(c.queue, c.store),
            lock=c.lock,
            stop=stop,
        )
        scheduler = setup_scheduler(jobs)
        scheduler.start()
        logger.info("Scheduler started")
        try:
            while not await stop.sleep(3600):
                pass
        finally:
            scheduler.shutdown(wait=False)

    return await _run_with_components("scheduler", body)


async def cmd_health(args: argparse.Namespace) -> int:
    from listing_tracker.worker.health import HealthProbe

    components = build_components()
    try:
        probe = HealthProbe(components.queue, components.store)
        sample = await probe.sample()
        if sample["postgres_connected"]:
            await components.store.record_health(**sample)
    finally:
        await components.close()

    print("Health")
    print("======")
    for key, value in sample.items():
        print(f"{key}: {value}")
    healthy = sample["redis_connected"] and sample["postgres_connected"]
    return 0 if healthy else 1


# ----------------------------------------------------------------------
# Operator queue tools
# ----------------------------------------------------------------------

async def queue_stats(queue: WorkQueue) -> int:
    stats = await queue.stats()
    print("=" * 60)
    print(f"{settings.portal_name} queue statistics")
    print("=" * 60)
    print(f"Started: {stats.started_at or 'N/A'}")
    print(f"Total discovered: {stats.total_discovered:,}")
    print(f"Processed: {stats.processed_count:,}")
    print(f"Queue depth: {stats.queue_depth:,}")
    print(f"Failed: {stats.failed_count:,}")
    print(f"Progress: {stats.progress:.2f}%")
    print(f"Missing queue: {stats.missing_queue_depth:,}")
    print(f"Verified inactive: {stats.verified_inactive_count:,}")
    print("=" * 60)
    return 0


async def queue_clear(queue: WorkQueue, skip_confirmation: bool = False) -> int:
    if not skip_confirmation:
        delay = settings.clear_confirmation_seconds
        print("WARNING: This will delete all queue data!")
        print(f"Press Ctrl+C within {delay} seconds to cancel...")
        await asyncio.sleep(delay)
    await queue.clear()
    print("Queue cleared successfully")
    return 0


async def queue_retry_failed(queue: WorkQueue) -> int:
    count = await queue.retry_failed()
    print(f"Re-queued {count} failed listings")
    return 0


async def queue_show_failed(queue: WorkQueue, limit: int = SHOW_FAILED_LIMIT) -> int:
    failed = await queue.get_failed()
    print(f"Failed listings ({len(failed)}):")
    for listing_id, reason in list(failed.items())[:limit]:
        print(f"  - {listing_id}: {reason}")
    if len(failed) > limit:
        print(f"  ... and {len(failed) - limit} more")
    return 0


async def cmd_queue(args: argparse.Namespace, queue: Optional[WorkQueue] = None) -> int:
    owned = queue is None
    queue = queue or WorkQueue()
    try:
        if args.action == "stats":
            return await queue_stats(queue)
        if args.action == "clear":
            return await queue_clear(queue, skip_confirmation=args.yes)
        if args.action == "retry-failed":
            return await queue_retry_failed(queue)
        if args.action == "show-failed":
            return await queue_show_failed(queue, limit=args.limit)
        raise ValueError(f"Unknown queue action: {args.action}")
    finally:
        if owned:
            await queue.close()


COMMANDS = {
    "init-db": cmd_init_db,
    "discover": cmd_discover,
    "worker": cmd_worker,
    "verifier": cmd_verifier,
    "scheduler": cmd_scheduler,
    "health": cmd_health,
    "queue": cmd_queue,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listing-tracker",
        description="Distributed listing discovery, change tracking and verification",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create tables, the stats view and seed areas")

    discover = subparsers.add_parser("discover", help="Run one discovery pass")
    discover.add_argument(
        "--area",
        action="append",
        default=None,
        help="Area to discover (repeatable, defaults to every known area)",
    )
    discover.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help=f"Maximum pages per area (default: {settings.max_pages_per_area})",
    )

    worker = subparsers.add_parser("worker", help="Run a detail worker")
    worker.add_argument(
        "--forever",
        action="store_true",
        help="Keep waiting for work instead of exiting when the queue is drained",
    )

    verifier = subparsers.add_parser("verifier", help="Run a verification worker")
    verifier.add_argument(
        "--hours",
        type=float,
        default=None,
        help=f"Staleness threshold in hours (default: {settings.missing_threshold_hours})",
    )

    subparsers.add_parser("scheduler", help="Run the adaptive scheduler process")
    subparsers.add_parser("health", help="Record and print one health sample")

    queue = subparsers.add_parser("queue", help="Inspect and manage the work queue")
    queue.add_argument("action", choices=["stats", "clear", "retry-failed", "show-failed"])
    queue.add_argument("--yes", action="store_true", help="Skip the confirmation delay of 'clear'")
    queue.add_argument("--limit", type=int, default=SHOW_FAILED_LIMIT, help="Rows shown by 'show-failed'")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(process_name=args.command)

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        print("Cancelled.")
        return 1
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=settings.debug)
        return 1


if __name__ == "__main__":
    sys.exit(main())
