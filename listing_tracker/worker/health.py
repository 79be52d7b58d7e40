"""Periodic health sampling into the scraper_health table."""

import logging
from typing import Any, Optional

from listing_tracker import metrics
from listing_tracker.db.store import TrackerStore
from listing_tracker.worker.runtime import INFRASTRUCTURE_ERRORS
from listing_tracker.worker.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class HealthProbe:
    """Collects queue and store health into one HealthSample row."""

    def __init__(self, queue: WorkQueue, store: TrackerStore):
        self.queue = queue
        self.store = store

    async def sample(self) -> dict[str, Any]:
        """
        Gather a health sample without raising on connectivity loss.

        Returns:
            Dict keyed by scraper_health column names
        """
        sample: dict[str, Any] = {
            "redis_connected": False,
            "postgres_connected": False,
            "queue_depth": None,
            "processed_count": None,
            "failed_count": None,
            "worker_count": None,
            "avg_processing_time_ms": None,
            "errors_last_hour": None,
        }

        try:
            sample["redis_connected"] = await self.queue.ping()
            stats = await self.queue.stats()
            sample["queue_depth"] = stats.queue_depth
            sample["processed_count"] = stats.processed_count
            sample["failed_count"] = stats.failed_count
            sample["worker_count"] = await self.queue.active_worker_count()
            latency = await self.queue.avg_processing_latency_ms()
            sample["avg_processing_time_ms"] = round(latency) if latency is not None else None
            sample["errors_last_hour"] = await self.queue.errors_last_hour()
            metrics.update_queue_depths(stats.queue_depth, stats.missing_queue_depth, stats.failed_count)
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"Redis health check failed: {e}")
            sample["redis_connected"] = False

        try:
            sample["postgres_connected"] = await self.store.ping()
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"Database health check failed: {e}")

        return sample

    async def record(self) -> Optional[int]:
        """Sample and persist; returns the new row id, or None if the database is down."""
        sample = await self.sample()
        if not sample["postgres_connected"]:
            logger.warning("Skipping health sample write, database unreachable")
            return None
        row_id = await self.store.record_health(**sample)
        logger.debug(f"Recorded health sample {row_id}: {sample}")
        return row_id
