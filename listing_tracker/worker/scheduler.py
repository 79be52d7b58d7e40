"""APScheduler job definitions for the scheduler process."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from listing_tracker.config import settings
from listing_tracker.db.store import TrackerStore
from listing_tracker.worker.coordinator import RUN_TYPE as DISCOVERY_RUN, DiscoveryCoordinator
from listing_tracker.worker.health import HealthProbe
from listing_tracker.worker.run_lock import RunLock
from listing_tracker.worker.runtime import StopFlag

logger = logging.getLogger(__name__)

WATCHDOG_INTERVAL_SECONDS = 120


class SchedulerJobs:
    """Bound job callables sharing one set of connections."""

    def __init__(
        self,
        coordinator: DiscoveryCoordinator,
        store: TrackerStore,
        health_probe: HealthProbe,
        lock: RunLock,
        stop: Optional[StopFlag] = None,
    ):
        self.coordinator = coordinator
        self.store = store
        self.health_probe = health_probe
        self.lock = lock
        self.stop = stop or StopFlag()

    async def run_due_discovery(self) -> None:
        """Run one discovery pass over areas whose next_scrape is due."""
        due = await self.store.get_due_areas()
        if not due:
            logger.debug("No areas due for discovery")
            return
        logger.info(f"{len(due)} areas due for discovery: {', '.join(due)}")
        await self.coordinator.run(areas=due, stop=self.stop)

    async def record_health(self) -> None:
        await self.health_probe.record()

    async def discovery_watchdog(self, heartbeat_stale_seconds: int = 300) -> int:
        """
        Recover from dead discovery producers.

        A held lock with a stale or missing heartbeat is cleared. Running
        discovery runs older than the stale window with no live lock are
        marked failed.

        Returns:
            Number of runs marked failed
        """
        lock_info = await self.lock.info()
        heartbeat_age = await self.lock.heartbeat_age()

        if lock_info:
            if heartbeat_age is not None and heartbeat_age <= heartbeat_stale_seconds:
                logger.debug(
                    f"Watchdog: lock healthy for run {lock_info.get('run_id')} "
                    f"(TTL: {lock_info.get('ttl_seconds')}s, heartbeat_age: {heartbeat_age:.0f}s)"
                )
                return 0
            logger.warning(
                f"Watchdog: stale heartbeat for run {lock_info.get('run_id')} "
                f"(age: {heartbeat_age}), clearing lock"
            )
            await self.lock.force_release()

        cutoff = datetime.utcnow() - timedelta(seconds=heartbeat_stale_seconds)
        failed = await self.store.fail_stale_runs(DISCOVERY_RUN, cutoff)
        if failed:
            logger.warning(f"Watchdog: marked {failed} orphaned discovery runs as failed")
        return failed


def setup_scheduler(jobs: SchedulerJobs) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Due-area discovery every settings.scheduler_poll_minutes
    - Health sample every settings.health_probe_interval_seconds
    - Discovery watchdog every two minutes

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    poll_minutes = max(1, int(settings.scheduler_poll_minutes))

    scheduler.add_job(
        jobs.run_due_discovery,
        IntervalTrigger(minutes=poll_minutes),
        id="due_discovery",
        name="Discover listings in due areas",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
        next_run_time=datetime.now(),
    )

    scheduler.add_job(
        jobs.record_health,
        IntervalTrigger(seconds=settings.health_probe_interval_seconds),
        id="health_probe",
        name="Record scraper health sample",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        jobs.discovery_watchdog,
        IntervalTrigger(seconds=WATCHDOG_INTERVAL_SECONDS),
        id="discovery_watchdog",
        name="Discovery lock watchdog",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: due-area discovery every %d minutes, health sample every %d seconds, "
        "discovery watchdog every %d seconds",
        poll_minutes,
        settings.health_probe_interval_seconds,
        WATCHDOG_INTERVAL_SECONDS,
    )

    return scheduler
