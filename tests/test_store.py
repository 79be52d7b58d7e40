"""Tests for the durable store."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from listing_tracker.config import settings
from listing_tracker.db.session import init_db
from listing_tracker.db.store import compute_change_rate
from listing_tracker.detect.adaptive_schedule import AdaptiveSchedulePolicy
from listing_tracker.ingest.base import ListingRecord
from listing_tracker.worker.counters import RunCounters


@pytest.mark.parametrize(
    "changes,scrapes,expected",
    [
        (0, 0, Decimal("0")),
        (1, 1, Decimal("1")),
        (1, 2, Decimal("0.5")),
        (1, 3, Decimal("0.3333")),
        (5, 3, Decimal("1")),
    ],
)
def test_compute_change_rate(changes, scrapes, expected):
    assert compute_change_rate(changes, scrapes) == expected


@pytest.mark.asyncio
async def test_metadata_counts_every_scrape(store):
    await store.update_item_metadata("1", status="active", price=Decimal("100"), changed=True)
    await store.update_item_metadata("1", status="active", price=Decimal("100"), changed=False)
    meta = await store.update_item_metadata("1", status="active", price=Decimal("90"), changed=True)

    assert meta.scrape_count == 3
    assert meta.change_count == 2
    assert meta.change_rate == Decimal("0.6667")
    assert meta.current_price == Decimal("90")
    assert meta.first_seen <= meta.last_seen


@pytest.mark.asyncio
async def test_mark_item_inactive(store):
    assert await store.mark_item_inactive("unknown") is False

    await store.update_item_metadata("1", status="active", price=Decimal("100"), changed=True)
    assert await store.mark_item_inactive("1") is True
    meta = await store.get_item_metadata("1")
    assert meta.current_status == "inactive"
    assert meta.current_price is None


@pytest.mark.asyncio
async def test_snapshot_diff_records_changed_fields(store):
    first = ListingRecord(listing_id="7", price=100000, title="Bilocale", images=["a.jpg"])
    await store.store_snapshot(first, "f1")
    second = ListingRecord(
        listing_id="7",
        price=100000,
        title="Bilocale ristrutturato",
        images=["a.jpg", "b.jpg"],
        fetched_at=first.fetched_at + timedelta(hours=1),
    )
    await store.store_snapshot(second, "f2")

    changes = await store.list_changes("7")
    assert {c.field_name for c in changes} == {"title", "images"}
    title_change = next(c for c in changes if c.field_name == "title")
    assert title_change.old_value == "Bilocale"
    assert title_change.new_value == "Bilocale ristrutturato"
    assert await store.get_last_fingerprint("7") == "f2"


@pytest.mark.asyncio
async def test_first_snapshot_has_no_changes(store):
    await store.store_snapshot(ListingRecord(listing_id="8", price=1), "f")
    assert await store.list_changes("8") == []
    assert await store.count_snapshots() == 1


@pytest.mark.asyncio
async def test_default_areas_are_seeded_once(store, engine):
    areas = await store.list_areas()
    assert sorted(a.area_name for a in areas) == sorted(settings.default_areas)

    await init_db(engine)
    assert len(await store.list_areas()) == len(settings.default_areas)

    assert await store.seed_areas(["milano", "bergamo"]) == 1
    assert await store.get_area("bergamo") is not None


@pytest.mark.asyncio
async def test_due_areas(store):
    now = datetime.utcnow()
    policy = AdaptiveSchedulePolicy()
    await store.record_area_scrape("milano", policy, scraped_at=now - timedelta(hours=10))
    await store.record_area_scrape("roma", policy, scraped_at=now)

    due = await store.get_due_areas(now)
    assert "milano" in due
    assert "roma" not in due


@pytest.mark.asyncio
async def test_area_schedule_adapts_to_change_rate(store):
    policy = AdaptiveSchedulePolicy(min_interval_hours=1, max_interval_hours=48)
    start = datetime.utcnow() - timedelta(hours=2)

    for listing_id in ("1", "2"):
        await store.update_item_metadata(listing_id, status="active", price=None, changed=True, area="torino")
    first = await store.record_area_scrape("torino", policy, scraped_at=start)
    assert first.scrape_interval_hours == settings.default_scrape_interval_hours
    assert first.total_properties == 2

    # Both listings got a new snapshot since the first pass
    for listing_id in ("1", "2"):
        await store.store_snapshot(
            ListingRecord(listing_id=listing_id, price=5, fetched_at=start + timedelta(hours=1)), "x"
        )
    second = await store.record_area_scrape("torino", policy, scraped_at=start + timedelta(hours=2))

    assert second.change_rate == Decimal("0.3")
    assert second.avg_changes_per_scrape == Decimal("0.6")
    assert second.scrape_interval_hours == 5
    assert second.next_scrape == second.last_scraped + timedelta(hours=second.scrape_interval_hours)


@pytest.mark.asyncio
async def test_quiet_area_backs_off(store):
    policy = AdaptiveSchedulePolicy(min_interval_hours=1, max_interval_hours=48)
    start = datetime.utcnow() - timedelta(hours=4)
    await store.update_item_metadata("q1", status="active", price=None, changed=True, area="genova")
    await store.record_area_scrape("genova", policy, scraped_at=start)
    second = await store.record_area_scrape("genova", policy, scraped_at=start + timedelta(hours=2))

    assert second.change_rate == 0
    assert second.scrape_interval_hours == 48


@pytest.mark.asyncio
async def test_run_lifecycle(store):
    run_id = await store.start_run("discovery")
    assert [r.id for r in await store.list_running_runs("discovery")] == [run_id]

    await store.complete_run(run_id, RunCounters(discovered=5, new=3, errors=1, failed=2))

    run = await store.get_run(run_id)
    assert run.status == "completed"
    assert run.properties_discovered == 5
    assert run.properties_new == 3
    assert run.errors_count == 3
    assert run.completed_at >= run.started_at


@pytest.mark.asyncio
async def test_stats_view(store):
    await store.update_item_metadata("1", status="active", price=None, changed=True)
    await store.update_item_metadata("2", status="inactive", price=None, changed=True)
    await store.store_snapshot(ListingRecord(listing_id="1", price=1), "a")
    await store.start_run("detail")

    stats = await store.get_stats()
    assert stats["total_snapshots"] == 1
    assert stats["total_properties"] == 2
    assert stats["active_properties"] == 1
    assert stats["active_runs"] == 1


@pytest.mark.asyncio
async def test_count_known_items(store):
    await store.update_item_metadata("1", status="active", price=None, changed=True)
    assert await store.count_known_items(["1", "2", "1"]) == 1
    assert await store.count_known_items([]) == 0
