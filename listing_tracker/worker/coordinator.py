"""Discovery producer: pages through area searches and enqueues listing ids."""

import asyncio
import logging
from typing import Iterable, Optional
from uuid import uuid4

from listing_tracker import metrics
from listing_tracker.config import settings
from listing_tracker.db.store import TrackerStore
from listing_tracker.detect.adaptive_schedule import AdaptiveSchedulePolicy
from listing_tracker.ingest.base import BaseCatalogFetcher
from listing_tracker.worker.counters import RunCounters
from listing_tracker.worker.run_lock import RunLock
from listing_tracker.worker.runtime import INFRASTRUCTURE_ERRORS, StopFlag, polite_delay
from listing_tracker.worker.work_queue import WorkQueue

logger = logging.getLogger(__name__)

RUN_TYPE = "discovery"


class DiscoveryCoordinator:
    """
    Runs one discovery pass over a set of areas.

    A pass is a Run: it moves running -> completed, or running -> failed when
    the coordination layer is lost. A failing area is logged, counted and
    skipped; it never aborts the pass.
    """

    def __init__(
        self,
        queue: WorkQueue,
        store: TrackerStore,
        fetcher: BaseCatalogFetcher,
        lock: Optional[RunLock] = None,
        policy: Optional[AdaptiveSchedulePolicy] = None,
        page_delay: tuple[float, float] = None,
        area_delay: tuple[float, float] = None,
    ):
        self.queue = queue
        self.store = store
        self.fetcher = fetcher
        self.lock = lock
        self.policy = policy or AdaptiveSchedulePolicy.from_settings()
        self.page_delay = page_delay or (settings.min_page_delay_seconds, settings.max_page_delay_seconds)
        self.area_delay = area_delay or (settings.min_area_delay_seconds, settings.max_area_delay_seconds)

    def build_search_url(self, area: str, page: int) -> str:
        path = settings.search_url_template.format(
            area=area,
            transaction=settings.transaction_type,
            page=page,
        )
        return f"{settings.catalog_base_url.rstrip('/')}{path}"

    async def _resolve_areas(self, areas: Optional[Iterable[str]]) -> list[str]:
        if areas:
            return list(dict.fromkeys(areas))
        known = [area.area_name for area in await self.store.list_areas()]
        return known or list(settings.default_areas)

    async def discover_area(
        self,
        area: str,
        max_pages: int,
        counters: RunCounters,
        stop: Optional[StopFlag] = None,
    ) -> list[str]:
        """
        Collect listing ids for one area.

        Pagination ends at the first empty page or after max_pages. A page
        error ends pagination for the area; ids gathered so far are kept.
        """
        stop = stop or StopFlag()
        collected: list[str] = []

        for page in range(1, max_pages + 1):
            url = self.build_search_url(area, page)
            try:
                ids = await self.fetcher.fetch_page(url)
            except INFRASTRUCTURE_ERRORS:
                raise
            except Exception as e:
                logger.error(f"Failed to fetch page {page} of {area}: {e}")
                metrics.record_discovery_page("error")
                counters.errors += 1
                break

            if not ids:
                logger.info(f"No listings found on page {page} of {area}, stopping")
                metrics.record_discovery_page("empty")
                break

            metrics.record_discovery_page("ok")
            collected.extend(ids)
            logger.info(f"{area} page {page}: found {len(ids)} ids (total: {len(collected)})")

            if page < max_pages and await polite_delay(stop, *self.page_delay):
                break

        return list(dict.fromkeys(collected))

    async def _process_area(
        self,
        area: str,
        max_pages: int,
        counters: RunCounters,
        stop: StopFlag,
    ) -> None:
        ids = await self.discover_area(area, max_pages, counters, stop)
        if ids:
            known = await self.store.count_known_items(ids)
            added = await self.queue.enqueue(ids, area=area)
            counters.discovered += len(ids)
            counters.new += len(ids) - known
            counters.enqueued += added
            metrics.discovery_ids_enqueued_total.inc(added)
            logger.info(f"{area}: {len(ids)} discovered, {len(ids) - known} new, {added} enqueued")

        await self.store.record_area_scrape(
            area,
            self.policy,
            area_type=settings.default_area_type,
            default_interval_hours=settings.default_scrape_interval_hours,
        )

    async def run(
        self,
        areas: Optional[Iterable[str]] = None,
        max_pages: Optional[int] = None,
        stop: Optional[StopFlag] = None,
    ) -> Optional[RunCounters]:
        """
        Execute one discovery pass.

        Args:
            areas: Area names (defaults to every known area)
            max_pages: Page limit per area (defaults to settings)
            stop: Stop flag checked between pages and areas

        Returns:
            The pass counters, or None when another pass holds the run lock
        """
        stop = stop or StopFlag()
        max_pages = max_pages or settings.max_pages_per_area
        area_names = await self._resolve_areas(areas)

        lock_owner = uuid4().hex
        token = None
        heartbeat = None
        if self.lock is not None:
            token = await self.lock.acquire(lock_owner)
            if token is None:
                logger.warning("Another discovery pass is running, skipping")
                return None
            heartbeat = asyncio.create_task(self.lock.keep_alive(lock_owner, token))

        counters = RunCounters()
        run_id = await self.store.start_run(RUN_TYPE)
        logger.info(f"Discovery run {run_id} over {len(area_names)} areas (max {max_pages} pages each)")

        try:
            for index, area in enumerate(area_names):
                if stop.requested:
                    logger.info("Stop requested, ending discovery pass early")
                    break
                try:
                    await self._process_area(area, max_pages, counters, stop)
                except INFRASTRUCTURE_ERRORS:
                    raise
                except Exception as e:
                    logger.error(f"Failed to discover {area}: {e}", exc_info=True)
                    counters.errors += 1

                if index < len(area_names) - 1 and await polite_delay(stop, *self.area_delay):
                    break
        except BaseException:
            await self._finish(run_id, counters, failed=True)
            raise
        else:
            await self._finish(run_id, counters, failed=False)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
            if self.lock is not None and token:
                await self.lock.release(lock_owner, token)

        return counters

    async def _finish(self, run_id: int, counters: RunCounters, failed: bool) -> None:
        status = "failed" if failed else "completed"
        try:
            if failed:
                await self.store.fail_run(run_id, counters)
            else:
                await self.store.complete_run(run_id, counters)
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"Could not finalize discovery run {run_id}: {e}")
            if not failed:
                raise
        metrics.record_run(RUN_TYPE, status)
        logger.info(
            f"Discovery run {run_id} {status}: discovered={counters.discovered} "
            f"new={counters.new} enqueued={counters.enqueued} errors={counters.errors}"
        )

        if not failed:
            stats = await self.queue.stats()
            metrics.update_queue_depths(stats.queue_depth, stats.missing_queue_depth, stats.failed_count)
