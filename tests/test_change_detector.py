"""Tests for fingerprinting and change detection."""

from datetime import datetime, timedelta

import pytest

from listing_tracker.detect.change_detector import ChangeDetector, compute_fingerprint
from listing_tracker.ingest.base import ListingRecord


def record(**kwargs) -> ListingRecord:
    defaults = dict(listing_id="1", price=250000, title="Bilocale", description="Vista parco")
    defaults.update(kwargs)
    return ListingRecord(**defaults)


class TestFingerprint:
    def test_stable_across_fetch_times(self):
        first = record(fetched_at=datetime(2024, 1, 1))
        second = record(fetched_at=datetime(2024, 1, 1) + timedelta(days=3))
        assert compute_fingerprint(first) == compute_fingerprint(second)

    def test_ignores_volatile_fields(self):
        base = record()
        noisy = record(images=["x.jpg"], raw={"views": 1200}, source_url="https://elsewhere")
        assert compute_fingerprint(base) == compute_fingerprint(noisy)

    def test_price_representation_does_not_matter(self):
        assert compute_fingerprint(record(price=250000)) == compute_fingerprint(record(price="250000.00"))

    def test_surrounding_whitespace_does_not_matter(self):
        assert compute_fingerprint(record(title="Bilocale ")) == compute_fingerprint(record())

    @pytest.mark.parametrize(
        "changes",
        [{"price": 240000}, {"title": "Trilocale"}, {"description": "Vista lago"}, {"price": None}],
    )
    def test_content_change_alters_fingerprint(self, changes):
        assert compute_fingerprint(record(**changes)) != compute_fingerprint(record())

    def test_is_sha256_hex(self):
        fingerprint = compute_fingerprint(record())
        assert len(fingerprint) == 64
        int(fingerprint, 16)


@pytest.mark.asyncio
async def test_new_listing_has_changed(queue, store):
    detector = ChangeDetector(queue, store)
    assert await detector.has_changed("1", record()) is True


@pytest.mark.asyncio
async def test_detects_change_against_cached_fingerprint(queue, store):
    detector = ChangeDetector(queue, store)
    await detector.remember("1", detector.fingerprint(record()))

    assert await detector.has_changed("1", record(fetched_at=datetime.utcnow() + timedelta(hours=1))) is False
    assert await detector.has_changed("1", record(price=199000)) is True


@pytest.mark.asyncio
async def test_falls_back_to_store_and_warms_cache(queue, store):
    detector = ChangeDetector(queue, store)
    stored = record()
    await store.store_snapshot(stored, detector.fingerprint(stored))

    assert await detector.last_fingerprint("1") == detector.fingerprint(stored)
    assert await queue.get_fingerprint("1") == detector.fingerprint(stored)
