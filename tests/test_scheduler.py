"""Tests for scheduler jobs, the discovery watchdog and health sampling."""

import time

import pytest

from listing_tracker.worker.coordinator import DiscoveryCoordinator
from listing_tracker.worker.health import HealthProbe
from listing_tracker.worker.run_lock import RunLock
from listing_tracker.worker.scheduler import SchedulerJobs, setup_scheduler


@pytest.fixture
def lock(redis_client):
    return RunLock(namespace="test", client=redis_client)


@pytest.fixture
def jobs(queue, store, fetcher, lock):
    coordinator = DiscoveryCoordinator(
        queue, store, fetcher, lock=lock, page_delay=(0, 0), area_delay=(0, 0)
    )
    return SchedulerJobs(
        coordinator=coordinator,
        store=store,
        health_probe=HealthProbe(queue, store),
        lock=lock,
    )


@pytest.mark.asyncio
async def test_due_discovery_runs_every_due_area_once(jobs, store, fetcher):
    due = await store.get_due_areas()
    assert due

    await jobs.run_due_discovery()

    assert len(fetcher.page_calls) == len(due)
    assert await store.get_due_areas() == []

    # Nothing due: no pass at all
    await jobs.run_due_discovery()
    assert len(fetcher.page_calls) == len(due)


@pytest.mark.asyncio
async def test_watchdog_leaves_healthy_lock_alone(jobs, lock):
    token = await lock.acquire("live-run", ttl_seconds=60)

    assert await jobs.discovery_watchdog() == 0
    assert (await lock.info())["run_id"] == "live-run"

    await lock.release("live-run", token)


@pytest.mark.asyncio
async def test_watchdog_clears_lock_with_stale_heartbeat(jobs, lock, redis_client):
    await lock.acquire("dead-run", ttl_seconds=3600)
    await redis_client.set(lock.heartbeat_key, str(time.time() - 900))

    await jobs.discovery_watchdog(heartbeat_stale_seconds=300)

    assert await lock.info() is None


@pytest.mark.asyncio
async def test_watchdog_fails_orphaned_runs(jobs, store):
    run_id = await store.start_run("discovery")
    detail_run = await store.start_run("detail")

    assert await jobs.discovery_watchdog(heartbeat_stale_seconds=0) == 1

    assert (await store.get_run(run_id)).status == "failed"
    assert (await store.get_run(detail_run)).status == "running"


@pytest.mark.asyncio
async def test_watchdog_spares_recent_runs(jobs, store):
    await store.start_run("discovery")
    assert await jobs.discovery_watchdog(heartbeat_stale_seconds=300) == 0


def test_setup_scheduler_registers_jobs(jobs):
    scheduler = setup_scheduler(jobs)
    assert {job.id for job in scheduler.get_jobs()} == {
        "due_discovery",
        "health_probe",
        "discovery_watchdog",
    }


@pytest.mark.asyncio
async def test_health_sample_is_recorded(queue, store):
    await queue.enqueue(["1", "2"])
    await queue.register_worker("w1")
    await queue.record_processing_latency(120)
    await queue.record_error()
    probe = HealthProbe(queue, store)

    row_id = await probe.record()

    assert row_id is not None
    health = await store.latest_health()
    assert health.redis_connected is True
    assert health.postgres_connected is True
    assert health.queue_depth == 2
    assert health.worker_count == 1
    assert health.errors_last_hour == 1
    assert float(health.avg_processing_time_ms) == pytest.approx(120)
