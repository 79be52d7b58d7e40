"""Tests for the detail worker processing path."""

import asyncio
from decimal import Decimal

import pytest

from listing_tracker.worker.detail_worker import (
    CHANGED,
    DUPLICATE,
    FAILED,
    REQUEUED,
    UNCHANGED,
    DetailWorker,
)


class MemoryStore:
    """Minimal in-memory stand-in for the durable store."""

    def __init__(self):
        self.snapshots: dict[str, list[str]] = {}
        self.metadata: dict[str, dict] = {}
        self.runs: dict[int, tuple[str, object]] = {}

    async def start_run(self, run_type):
        run_id = len(self.runs) + 1
        self.runs[run_id] = ("running", None)
        return run_id

    async def complete_run(self, run_id, counters):
        self.runs[run_id] = ("completed", counters)

    async def fail_run(self, run_id, counters):
        self.runs[run_id] = ("failed", counters)

    async def store_snapshot(self, record, checksum):
        self.snapshots.setdefault(record.listing_id, []).append(checksum)
        await asyncio.sleep(0)
        return len(self.snapshots[record.listing_id])

    async def get_last_fingerprint(self, portal_id):
        history = self.snapshots.get(portal_id)
        return history[-1] if history else None

    async def update_item_metadata(self, portal_id, *, status, price, changed, area=None, seen_at=None):
        meta = self.metadata.setdefault(portal_id, {"scrape_count": 0, "change_count": 0})
        meta["scrape_count"] += 1
        if changed:
            meta["change_count"] += 1
        meta["status"] = status
        return meta


def make_worker(queue, store, fetcher, ingestion, **kwargs):
    return DetailWorker(queue, store, fetcher, ingestion, worker_id="test-worker", **kwargs)


@pytest.mark.asyncio
async def test_new_listing_is_recorded_and_forwarded(queue, store, fetcher, ingestion):
    fetcher.add_listing("1", price=300000)
    await queue.enqueue(["1"], area="milano")
    worker = make_worker(queue, store, fetcher, ingestion)

    assert await worker.process(await queue.dequeue(timeout=0)) == CHANGED

    meta = await store.get_item_metadata("1")
    assert meta.scrape_count == 1
    assert meta.change_count == 1
    assert meta.change_rate == Decimal("1")
    assert meta.current_price == Decimal("300000")
    assert meta.area == "milano"
    assert await store.count_snapshots("1") == 1
    assert len(ingestion.ingested) == 1
    assert ingestion.ingested[0]["portal_id"] == "1"
    assert await queue.is_processed("1")
    assert worker.counters.changed == 1


@pytest.mark.asyncio
async def test_refetched_identical_listing_is_unchanged(queue, store, fetcher, ingestion, redis_client):
    fetcher.add_listing("1")
    worker = make_worker(queue, store, fetcher, ingestion)
    assert await worker.process("1") == CHANGED

    # Next cycle: the processed mark has aged out, content is identical
    await redis_client.zrem(queue.processed_key, "1")
    fetcher.add_listing("1")
    assert await worker.process("1") == UNCHANGED

    meta = await store.get_item_metadata("1")
    assert meta.scrape_count == 2
    assert meta.change_count == 1
    assert meta.change_rate == Decimal("0.5")
    assert await store.count_snapshots("1") == 1
    assert len(ingestion.ingested) == 1


@pytest.mark.asyncio
async def test_price_change_writes_snapshot_and_change_row(queue, store, fetcher, ingestion, redis_client):
    fetcher.add_listing("1", price=300000)
    worker = make_worker(queue, store, fetcher, ingestion)
    await worker.process("1")

    await redis_client.zrem(queue.processed_key, "1")
    fetcher.add_listing("1", price=290000)
    assert await worker.process("1") == CHANGED

    assert await store.count_snapshots("1") == 2
    changes = await store.list_changes("1")
    assert [c.field_name for c in changes] == ["price"]
    assert Decimal(changes[0].old_value) == Decimal("300000")
    assert Decimal(changes[0].new_value) == Decimal("290000")
    assert len(ingestion.ingested) == 2


@pytest.mark.asyncio
async def test_fingerprint_falls_back_to_store_after_cache_loss(queue, store, fetcher, ingestion, redis_client):
    fetcher.add_listing("1")
    worker = make_worker(queue, store, fetcher, ingestion)
    await worker.process("1")

    await redis_client.delete(queue.fingerprints_key, queue.processed_key)
    assert await worker.process("1") == UNCHANGED
    assert await queue.get_fingerprint("1") is not None


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(queue, store, fetcher, ingestion):
    fetcher.add_listing("1")
    worker = make_worker(queue, store, fetcher, ingestion)

    assert await worker.process("1") == CHANGED
    assert await worker.process("1") == DUPLICATE
    assert fetcher.fetch_calls == ["1"]
    assert worker.counters.skipped == 1


@pytest.mark.asyncio
async def test_missing_record_counts_as_failure(queue, store, fetcher, ingestion):
    await queue.enqueue(["ghost"])
    await queue.dequeue(timeout=0)
    worker = make_worker(queue, store, fetcher, ingestion)

    assert await worker.process("ghost") == REQUEUED
    assert await queue.retry_count("ghost") == 1
    assert await queue.dequeue(timeout=0) == "ghost"


@pytest.mark.asyncio
async def test_failing_listing_is_requeued_max_attempts_then_failed(queue, store, fetcher, ingestion):
    fetcher.failing.add("x")
    await queue.enqueue(["x"])
    worker = make_worker(queue, store, fetcher, ingestion, max_attempts=3)

    counters = await worker.run(exit_when_idle=True, dequeue_timeout=0, request_delay=0)

    assert fetcher.fetch_calls == ["x"] * 4
    assert counters.requeued == 3
    assert counters.failed == 1
    assert "x" in await queue.get_failed()
    assert await queue.queue_depth() == 0
    assert not await queue.is_processed("x")
    assert await queue.errors_last_hour() == 4


@pytest.mark.asyncio
async def test_ingestion_failure_goes_through_retry_path(queue, store, fetcher, ingestion):
    ingestion.fail = True
    fetcher.add_listing("1")
    await queue.enqueue(["1"])
    worker = make_worker(queue, store, fetcher, ingestion)

    assert await worker.process(await queue.dequeue(timeout=0)) == REQUEUED
    assert not await queue.is_processed("1")
    assert await store.count_snapshots("1") == 0

    # Once the core service recovers the retry still sees the change
    ingestion.fail = False
    assert await worker.process(await queue.dequeue(timeout=0)) == CHANGED
    assert len(ingestion.ingested) == 1


@pytest.mark.asyncio
async def test_metadata_failure_is_retried_until_written(queue, store, fetcher, ingestion, monkeypatch):
    fetcher.add_listing("1", price=250000)
    await queue.enqueue(["1"])
    worker = make_worker(queue, store, fetcher, ingestion)

    real_update = store.update_item_metadata
    calls = []

    async def flaky_update(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise ValueError("metadata write rejected")
        return await real_update(*args, **kwargs)

    monkeypatch.setattr(store, "update_item_metadata", flaky_update)

    assert await worker.process(await queue.dequeue(timeout=0)) == REQUEUED
    assert not await queue.is_processed("1")
    assert await store.get_item_metadata("1") is None

    # The redelivery is not mistaken for a duplicate
    assert await worker.process(await queue.dequeue(timeout=0)) == UNCHANGED
    meta = await store.get_item_metadata("1")
    assert meta is not None
    assert meta.current_price == Decimal("250000")
    assert await store.count_snapshots("1") == 1
    assert await queue.is_processed("1")
    assert await queue.retry_count("1") == 0


@pytest.mark.asyncio
async def test_run_records_completed_detail_run(queue, store, fetcher, ingestion):
    for listing_id in ("1", "2", "3"):
        fetcher.add_listing(listing_id)
    await queue.enqueue(["1", "2", "3"])
    worker = make_worker(queue, store, fetcher, ingestion)

    counters = await worker.run(exit_when_idle=True, dequeue_timeout=0, request_delay=0)

    assert counters.processed == 3
    runs = await store.list_running_runs("detail")
    assert runs == []
    stats = await store.get_stats()
    assert stats["total_snapshots"] == 3
    assert stats["active_runs"] == 0
    assert await queue.active_worker_count() == 0


@pytest.mark.asyncio
async def test_concurrent_workers_process_each_listing_once(queue, fetcher, ingestion):
    store = MemoryStore()
    ids = [str(i) for i in range(30)]
    for listing_id in ids:
        fetcher.add_listing(listing_id)
    await queue.enqueue(ids)

    workers = [
        DetailWorker(queue, store, fetcher, ingestion, worker_id=f"w{n}")
        for n in range(4)
    ]
    results = await asyncio.gather(*(
        w.run(exit_when_idle=True, dequeue_timeout=0, request_delay=0) for w in workers
    ))

    assert sorted(fetcher.fetch_calls, key=int) == ids
    assert sum(c.processed for c in results) == len(ids)
    assert all(store.metadata[i]["scrape_count"] == 1 for i in ids)
    assert (await queue.stats()).processed_count == len(ids)
    assert len(ingestion.ingested) == len(ids)
