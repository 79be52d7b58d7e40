"""Verification consumer: detects listings that silently left the catalog."""

from typing import Optional

from listing_tracker import metrics
from listing_tracker.config import settings
from listing_tracker.db.store import TrackerStore
from listing_tracker.ingest.base import BaseCatalogFetcher
from listing_tracker.logging_config import get_logger
from listing_tracker.notify.core_client import CoreServiceClient
from listing_tracker.worker.counters import RunCounters
from listing_tracker.worker.detail_worker import make_worker_id
from listing_tracker.worker.runtime import INFRASTRUCTURE_ERRORS, StopFlag, polite_delay
from listing_tracker.worker.work_queue import WorkQueue

RUN_TYPE = "verification"

ACTIVE = "active"
INACTIVE = "inactive"
PROBE_ERROR = "probe_error"
REQUEUED = "requeued"
FAILED = "failed"

# Reason sent downstream when a probe confirms the listing is gone
INACTIVE_REASON = "verified_removed"


class Verifier:
    """
    Probes listings not seen for longer than a threshold.

    Only a definitive "absent" answer deactivates a listing. Ambiguous probe
    failures leave it untouched; the next staleness scan picks it up again.
    """

    def __init__(
        self,
        queue: WorkQueue,
        store: TrackerStore,
        fetcher: BaseCatalogFetcher,
        ingestion: CoreServiceClient,
        max_attempts: Optional[int] = None,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.store = store
        self.fetcher = fetcher
        self.ingestion = ingestion
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_retry_attempts
        self.worker_id = worker_id or make_worker_id("verifier")
        self.counters = RunCounters()
        self.logger = get_logger(__name__, worker_id=self.worker_id)

    async def queue_missing(self, hours_threshold: Optional[float] = None) -> int:
        """Find stale listings and push them onto the missing queue."""
        threshold = hours_threshold if hours_threshold is not None else settings.missing_threshold_hours
        self.logger.info(f"Finding listings not seen in last {threshold} hours...")
        missing = await self.queue.find_missing(threshold)
        self.logger.info(f"Found {len(missing)} potentially missing listings")
        if not missing:
            return 0
        queued = await self.queue.enqueue_missing(missing)
        self.counters.discovered += len(missing)
        self.counters.enqueued += queued
        self.logger.info(f"Queued {queued} listings for verification")
        return queued

    async def _deactivate(self, listing_id: str) -> None:
        # The queue mark comes last: once set, find_missing skips the id for good
        await self.ingestion.mark_inactive(listing_id, reason=INACTIVE_REASON)
        await self.store.mark_item_inactive(listing_id)
        await self.queue.mark_verified_inactive(listing_id)

    async def verify(self, listing_id: str) -> str:
        """
        Verify one listing.

        Returns:
            One of "active", "inactive", "probe_error", "requeued", "failed"
        """
        try:
            exists = await self.fetcher.probe_exists(listing_id)
        except INFRASTRUCTURE_ERRORS:
            raise
        except Exception as e:
            self.logger.warning(f"Probe for {listing_id} failed, assuming still active: {e}")
            self.counters.errors += 1
            metrics.record_verification(PROBE_ERROR)
            return PROBE_ERROR

        self.counters.processed += 1
        if exists:
            await self.queue.update_last_seen(listing_id)
            self.counters.active += 1
            metrics.record_verification(ACTIVE)
            return ACTIVE

        try:
            await self._deactivate(listing_id)
        except INFRASTRUCTURE_ERRORS:
            raise
        except Exception as e:
            await self.queue.record_error()
            if await self.queue.requeue_missing_with_retry(listing_id, self.max_attempts):
                self.logger.warning(f"Deactivation of {listing_id} failed, requeued: {e}")
                self.counters.requeued += 1
                self.counters.errors += 1
                metrics.record_verification(REQUEUED)
                return REQUEUED
            await self.queue.mark_verification_failed(listing_id, f"{type(e).__name__}: {e}")
            self.counters.failed += 1
            metrics.record_verification(FAILED)
            return FAILED

        self.logger.info(f"{listing_id} no longer listed, marked inactive")
        self.counters.inactive += 1
        metrics.record_verification(INACTIVE)
        return INACTIVE

    async def run(
        self,
        stop: Optional[StopFlag] = None,
        hours_threshold: Optional[float] = None,
        dequeue_timeout: Optional[float] = None,
        verify_delay: Optional[tuple[float, float]] = None,
        exit_when_idle: Optional[bool] = None,
    ) -> RunCounters:
        """Queue stale listings, then drain the missing queue."""
        stop = stop or StopFlag()
        timeout = settings.dequeue_timeout_seconds if dequeue_timeout is None else dequeue_timeout
        delay = verify_delay or (settings.min_verify_delay_seconds, settings.max_verify_delay_seconds)
        exit_when_idle = settings.exit_when_idle if exit_when_idle is None else exit_when_idle

        run_id = await self.store.start_run(RUN_TYPE)
        await self.queue.register_worker(self.worker_id)
        self.logger.info("Verifier started")
        failed = False

        try:
            await self.queue_missing(hours_threshold)

            while not stop.requested:
                listing_id = await self.queue.dequeue_missing(timeout)
                await self.queue.register_worker(self.worker_id)
                if listing_id is None:
                    if exit_when_idle and await self.queue.missing_queue_depth() == 0:
                        self.logger.info("Missing queue empty, stopping")
                        break
                    continue

                await self.verify(listing_id)
                if self.counters.processed and self.counters.processed % settings.progress_log_every == 0:
                    self.logger.info(
                        f"Progress: {self.counters.processed} verified "
                        f"({self.counters.active} active, {self.counters.inactive} inactive)"
                    )
                if await polite_delay(stop, *delay):
                    break
        except BaseException:
            failed = True
            raise
        finally:
            await self._finish(run_id, failed)

        return self.counters

    async def _finish(self, run_id: int, failed: bool) -> None:
        status = "failed" if failed else "completed"
        try:
            await self.queue.unregister_worker(self.worker_id)
            if failed:
                await self.store.fail_run(run_id, self.counters)
            else:
                await self.store.complete_run(run_id, self.counters)
        except INFRASTRUCTURE_ERRORS as e:
            self.logger.error(f"Could not finalize verification run {run_id}: {e}")
            if not failed:
                raise
        metrics.record_run(RUN_TYPE, status)
        self.logger.info(
            f"Verifier {status}. Verified: {self.counters.processed}, "
            f"Active: {self.counters.active}, Inactive: {self.counters.inactive}"
        )
