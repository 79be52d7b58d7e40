"""Detail consumer: fetches queued listings, detects changes and records them."""

import os
import random
import socket
import time
from typing import Optional
from uuid import uuid4

from listing_tracker import metrics
from listing_tracker.config import settings
from listing_tracker.db.store import TrackerStore
from listing_tracker.detect.change_detector import ChangeDetector
from listing_tracker.ingest.base import BaseCatalogFetcher, ListingUnavailableError
from listing_tracker.logging_config import get_logger
from listing_tracker.normalize.payload import build_ingestion_payload
from listing_tracker.notify.core_client import CoreServiceClient
from listing_tracker.worker.counters import RunCounters
from listing_tracker.worker.runtime import INFRASTRUCTURE_ERRORS, StopFlag, polite_delay
from listing_tracker.worker.work_queue import WorkQueue

RUN_TYPE = "detail"

# process() outcomes
DUPLICATE = "duplicate"
CHANGED = "changed"
UNCHANGED = "unchanged"
REQUEUED = "requeued"
FAILED = "failed"


def make_worker_id(prefix: str = "worker") -> str:
    return f"{prefix}:{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"


class DetailWorker:
    """
    Drains the pending queue one listing at a time.

    Failures are retried by redelivery: the id goes back to the pending list
    so any worker may pick it up later, up to max_attempts, then it is moved
    to the failed set.
    """

    def __init__(
        self,
        queue: WorkQueue,
        store: TrackerStore,
        fetcher: BaseCatalogFetcher,
        ingestion: CoreServiceClient,
        detector: Optional[ChangeDetector] = None,
        max_attempts: Optional[int] = None,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.store = store
        self.fetcher = fetcher
        self.ingestion = ingestion
        self.detector = detector or ChangeDetector(queue, store)
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_retry_attempts
        self.worker_id = worker_id or make_worker_id()
        self.counters = RunCounters()
        self.logger = get_logger(__name__, worker_id=self.worker_id)

    async def _fetch_and_record(self, listing_id: str) -> bool:
        """Fetch, detect, persist. Returns True if the listing changed."""
        record = await self.fetcher.fetch_listing(listing_id)
        if record is None:
            raise ListingUnavailableError(f"Fetcher returned no record for {listing_id}")

        fingerprint = self.detector.fingerprint(record)
        changed = await self.detector.has_changed(listing_id, record)

        if changed:
            # Forward before the snapshot: a retry after a failed forward must still see a change
            await self.ingestion.ingest(build_ingestion_payload(record))
            await self.store.store_snapshot(record, fingerprint)
            await self.detector.remember(listing_id, fingerprint)

        await self.queue.update_last_seen(listing_id)
        area = await self.queue.get_area(listing_id)
        await self.store.update_item_metadata(
            listing_id,
            status=record.status,
            price=record.price,
            changed=changed,
            area=area,
        )
        # Last step: a processed id is skipped on redelivery and keeps no retry count
        await self.queue.mark_processed(listing_id)
        return changed

    async def _handle_failure(self, listing_id: str, error: Exception) -> str:
        await self.queue.record_error()

        if await self.queue.requeue_with_retry(listing_id, self.max_attempts):
            attempts = await self.queue.retry_count(listing_id)
            self.logger.warning(
                f"Error processing {listing_id}, requeued (attempt {attempts}/{self.max_attempts}): {error}"
            )
            self.counters.requeued += 1
            self.counters.errors += 1
            return REQUEUED

        await self.queue.mark_failed(listing_id, f"{type(error).__name__}: {error}")
        self.logger.error(f"Giving up on {listing_id} after {self.max_attempts} retries: {error}")
        self.counters.failed += 1
        return FAILED

    async def process(self, listing_id: str) -> str:
        """
        Process one dequeued listing id.

        Returns:
            One of "duplicate", "changed", "unchanged", "requeued", "failed"
        """
        if await self.queue.is_processed(listing_id):
            self.logger.debug(f"{listing_id} already processed, skipping")
            self.counters.skipped += 1
            metrics.record_listing_outcome(DUPLICATE)
            return DUPLICATE

        started = time.monotonic()
        try:
            changed = await self._fetch_and_record(listing_id)
        except INFRASTRUCTURE_ERRORS:
            raise
        except Exception as e:
            outcome = await self._handle_failure(listing_id, e)
            metrics.record_listing_outcome(outcome, time.monotonic() - started)
            return outcome

        duration = time.monotonic() - started
        await self.queue.record_processing_latency(duration * 1000)

        self.counters.processed += 1
        if changed:
            self.counters.changed += 1
            outcome = CHANGED
        else:
            self.counters.unchanged += 1
            outcome = UNCHANGED
        metrics.record_listing_outcome(outcome, duration)
        self.logger.debug(f"Processed {listing_id}: {outcome}")
        return outcome

    async def _log_progress(self) -> None:
        stats = await self.queue.stats()
        metrics.update_queue_depths(stats.queue_depth, stats.missing_queue_depth, stats.failed_count)
        self.logger.info(
            f"Progress: {stats.processed_count}/{stats.total_discovered} ({stats.progress:.1f}%), "
            f"queue={stats.queue_depth}, failed={stats.failed_count}, "
            f"changed={self.counters.changed}, unchanged={self.counters.unchanged}"
        )

    async def run(
        self,
        stop: Optional[StopFlag] = None,
        exit_when_idle: Optional[bool] = None,
        dequeue_timeout: Optional[float] = None,
        request_delay: Optional[float] = None,
    ) -> RunCounters:
        """
        Worker loop: dequeue, process, pause, until stopped or idle.

        The stop flag is checked between queue operations; an item in flight
        is always finished first.
        """
        stop = stop or StopFlag()
        exit_when_idle = settings.exit_when_idle if exit_when_idle is None else exit_when_idle
        timeout = settings.dequeue_timeout_seconds if dequeue_timeout is None else dequeue_timeout
        delay = settings.request_delay_seconds if request_delay is None else request_delay
        jitter = settings.request_jitter_seconds if delay else 0.0

        run_id = await self.store.start_run(RUN_TYPE)
        await self.queue.register_worker(self.worker_id)
        self.logger.info("Detail worker started")
        failed = False
        handled = 0

        try:
            while not stop.requested:
                listing_id = await self.queue.dequeue(timeout)
                await self.queue.register_worker(self.worker_id)
                if listing_id is None:
                    if exit_when_idle:
                        self.logger.info("Queue drained, exiting")
                        break
                    continue

                outcome = await self.process(listing_id)
                handled += 1
                if handled % settings.progress_log_every == 0:
                    await self._log_progress()

                if outcome in (REQUEUED, FAILED):
                    pause = random.uniform(settings.error_backoff_min_seconds, settings.error_backoff_max_seconds) if delay else 0.0
                elif outcome == DUPLICATE:
                    pause = 0.0
                else:
                    pause = delay + random.uniform(0, jitter)
                if await polite_delay(stop, pause, pause):
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
            self.logger.error(f"Could not finalize detail run {run_id}: {e}")
            if not failed:
                raise
        metrics.record_run(RUN_TYPE, status)
        self.logger.info(f"Detail worker {status}: {self.counters.as_dict()}")
