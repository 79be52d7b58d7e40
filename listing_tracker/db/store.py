"""Durable store: snapshots, changes, per-listing metadata, areas, runs, health.

Every write is an independent row-level update keyed by listing id or area
name; nothing here needs a cross-row transaction.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import distinct, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_tracker.db.models import (
    GeographicArea,
    PropertyChange,
    PropertyMetadata,
    PropertySnapshot,
    ScrapeRun,
    ScraperHealth,
)
from listing_tracker.detect.adaptive_schedule import AdaptiveSchedulePolicy
from listing_tracker.ingest.base import ListingRecord
from listing_tracker.worker.counters import RunCounters

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound parameter limit
ID_CHUNK_SIZE = 500
MAX_AVG_CHANGES = Decimal("999.99")


def compute_change_rate(change_count: int, scrape_count: int) -> Decimal:
    """Changes per scrape, 0 when the listing was never scraped."""
    if scrape_count <= 0:
        return Decimal("0")
    rate = Decimal(min(change_count, scrape_count)) / Decimal(scrape_count)
    return rate.quantize(Decimal("0.0001"))


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _snapshot_state(snapshot: PropertySnapshot) -> dict[str, Any]:
    listing = (snapshot.raw_data or {}).get("listing", {})
    return {
        "price": snapshot.price,
        "status": snapshot.status,
        "title": listing.get("title"),
        "description": listing.get("description"),
        "images": listing.get("images") or [],
    }


def _values_differ(field_name: str, old: Any, new: Any) -> bool:
    if field_name == "price":
        if old is None or new is None:
            return old is not new
        return Decimal(str(old)) != Decimal(str(new))
    return old != new


class TrackerStore:
    """Repository over the Tier 1 scraper database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        if session_factory is None:
            from listing_tracker.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    async def ping(self) -> bool:
        """Round-trip to the database; raises when unreachable."""
        async with self.session_factory() as db:
            await db.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start_run(self, run_type: str) -> int:
        """Create a running scrape_runs row and return its id."""
        async with self.session_factory() as db:
            run = ScrapeRun(
                run_type=run_type,
                started_at=datetime.utcnow(),
                status="running",
            )
            db.add(run)
            await db.commit()
            await db.refresh(run)
            logger.info(f"Started {run_type} run {run.id}")
            return run.id

    async def _finish_run(self, run_id: int, status: str, counters: RunCounters) -> None:
        async with self.session_factory() as db:
            run = await db.get(ScrapeRun, run_id)
            if run is None:
                logger.warning(f"Run {run_id} not found, cannot mark {status}")
                return
            now = datetime.utcnow()
            run.status = status
            run.completed_at = now
            run.properties_discovered = counters.discovered
            run.properties_changed = counters.changed
            run.properties_unchanged = counters.unchanged
            run.properties_new = counters.new
            run.properties_inactive = counters.inactive
            run.errors_count = counters.errors + counters.failed
            run.duration_seconds = Decimal(str(round((now - run.started_at).total_seconds(), 2)))
            await db.commit()

    async def complete_run(self, run_id: int, counters: RunCounters) -> None:
        await self._finish_run(run_id, "completed", counters)

    async def fail_run(self, run_id: int, counters: RunCounters) -> None:
        await self._finish_run(run_id, "failed", counters)

    async def get_run(self, run_id: int) -> Optional[ScrapeRun]:
        async with self.session_factory() as db:
            return await db.get(ScrapeRun, run_id)

    async def list_running_runs(self, run_type: str | None = None) -> list[ScrapeRun]:
        async with self.session_factory() as db:
            query = select(ScrapeRun).where(ScrapeRun.status == "running")
            if run_type:
                query = query.where(ScrapeRun.run_type == run_type)
            result = await db.execute(query.order_by(ScrapeRun.started_at.desc()))
            return list(result.scalars().all())

    async def fail_stale_runs(self, run_type: str, started_before: datetime) -> int:
        """Mark runs that are still 'running' but started before a cutoff as failed."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScrapeRun).where(
                    ScrapeRun.status == "running",
                    ScrapeRun.run_type == run_type,
                    ScrapeRun.started_at < started_before,
                )
            )
            stale = list(result.scalars().all())
            now = datetime.utcnow()
            for run in stale:
                run.status = "failed"
                run.completed_at = now
                run.duration_seconds = Decimal(str(round((now - run.started_at).total_seconds(), 2)))
            await db.commit()
            return len(stale)

    # ------------------------------------------------------------------
    # Snapshots and changes
    # ------------------------------------------------------------------

    async def _latest_snapshot(self, db: AsyncSession, portal_id: str) -> Optional[PropertySnapshot]:
        result = await db.execute(
            select(PropertySnapshot)
            .where(PropertySnapshot.portal_id == portal_id)
            .order_by(PropertySnapshot.scraped_at.desc(), PropertySnapshot.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def store_snapshot(self, record: ListingRecord, checksum: str) -> int:
        """
        Persist a snapshot of a changed listing.

        When a previous snapshot exists, one property_changes row is written per
        tracked field whose value differs.

        Returns:
            Id of the new snapshot
        """
        async with self.session_factory() as db:
            previous = await self._latest_snapshot(db, record.listing_id)

            state = record.tracked_fields()
            snapshot = PropertySnapshot(
                portal_id=record.listing_id,
                scraped_at=record.fetched_at,
                raw_data=_json_safe({
                    "listing": {
                        **state,
                        "transaction_type": record.transaction_type,
                        "currency": record.currency,
                        "source_url": record.source_url,
                    },
                    "source": record.raw,
                }),
                checksum=checksum,
                price=record.price,
                status=record.status,
                transaction_type=record.transaction_type,
            )
            db.add(snapshot)
            await db.flush()

            changes = 0
            if previous is not None:
                old_state = _snapshot_state(previous)
                for field_name, new_value in state.items():
                    old_value = old_state.get(field_name)
                    if not _values_differ(field_name, old_value, new_value):
                        continue
                    db.add(PropertyChange(
                        portal_id=record.listing_id,
                        changed_at=record.fetched_at,
                        change_type=field_name,
                        field_name=field_name,
                        old_value=_as_text(old_value),
                        new_value=_as_text(new_value),
                        snapshot_id=snapshot.id,
                    ))
                    changes += 1

            await db.commit()
            logger.debug(
                f"Stored snapshot {snapshot.id} for {record.listing_id} ({changes} field changes)"
            )
            return snapshot.id

    async def get_last_fingerprint(self, portal_id: str) -> Optional[str]:
        async with self.session_factory() as db:
            snapshot = await self._latest_snapshot(db, portal_id)
            return snapshot.checksum if snapshot else None

    async def count_snapshots(self, portal_id: str | None = None) -> int:
        async with self.session_factory() as db:
            query = select(func.count(PropertySnapshot.id))
            if portal_id is not None:
                query = query.where(PropertySnapshot.portal_id == portal_id)
            return (await db.execute(query)).scalar() or 0

    async def list_changes(self, portal_id: str) -> list[PropertyChange]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PropertyChange)
                .where(PropertyChange.portal_id == portal_id)
                .order_by(PropertyChange.changed_at, PropertyChange.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Listing metadata
    # ------------------------------------------------------------------

    async def update_item_metadata(
        self,
        portal_id: str,
        *,
        status: Optional[str],
        price: Optional[Decimal],
        changed: bool,
        seen_at: datetime | None = None,
        area: str | None = None,
    ) -> PropertyMetadata:
        """
        Record one processing of a listing.

        scrape_count always increments; change_count and last_changed only when
        the listing changed; change_rate is recomputed from both.
        """
        seen_at = seen_at or datetime.utcnow()
        try:
            return await self._apply_metadata_update(portal_id, status, price, changed, seen_at, area)
        except IntegrityError:
            # Another worker inserted the row first; the retry takes the update path
            logger.debug(f"Concurrent metadata insert for {portal_id}, retrying as update")
            return await self._apply_metadata_update(portal_id, status, price, changed, seen_at, area)

    async def _apply_metadata_update(
        self,
        portal_id: str,
        status: Optional[str],
        price: Optional[Decimal],
        changed: bool,
        seen_at: datetime,
        area: str | None,
    ) -> PropertyMetadata:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PropertyMetadata)
                .where(PropertyMetadata.portal_id == portal_id)
                .with_for_update()
            )
            meta = result.scalar_one_or_none()
            if meta is None:
                meta = PropertyMetadata(
                    portal_id=portal_id,
                    first_seen=seen_at,
                    last_seen=seen_at,
                    scrape_count=0,
                    change_count=0,
                    change_rate=Decimal("0"),
                    area=area,
                )
                db.add(meta)

            meta.scrape_count += 1
            if changed:
                meta.change_count = min(meta.change_count + 1, meta.scrape_count)
                meta.last_changed = seen_at
            meta.change_rate = compute_change_rate(meta.change_count, meta.scrape_count)
            meta.last_seen = seen_at
            meta.current_status = status
            meta.current_price = price
            if area and not meta.area:
                meta.area = area

            await db.commit()
            return meta

    async def mark_item_inactive(self, portal_id: str, seen_at: datetime | None = None) -> bool:
        """
        Set a listing inactive with its price cleared.

        Returns:
            False when the listing has never been processed
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(PropertyMetadata)
                .where(PropertyMetadata.portal_id == portal_id)
                .with_for_update()
            )
            meta = result.scalar_one_or_none()
            if meta is None:
                logger.warning(f"No metadata for {portal_id}, cannot mark inactive")
                return False
            meta.current_status = "inactive"
            meta.current_price = None
            meta.last_seen = seen_at or datetime.utcnow()
            await db.commit()
            return True

    async def get_item_metadata(self, portal_id: str) -> Optional[PropertyMetadata]:
        async with self.session_factory() as db:
            return await db.get(PropertyMetadata, portal_id)

    async def count_known_items(self, portal_ids: Iterable[str]) -> int:
        """Number of the given ids that already have a metadata row."""
        ids = list(dict.fromkeys(portal_ids))
        known = 0
        async with self.session_factory() as db:
            for start in range(0, len(ids), ID_CHUNK_SIZE):
                chunk = ids[start:start + ID_CHUNK_SIZE]
                result = await db.execute(
                    select(func.count(PropertyMetadata.portal_id)).where(
                        PropertyMetadata.portal_id.in_(chunk)
                    )
                )
                known += result.scalar() or 0
        return known

    # ------------------------------------------------------------------
    # Areas
    # ------------------------------------------------------------------

    async def seed_areas(
        self,
        area_names: Iterable[str],
        area_type: str = "city",
        scrape_interval_hours: int = 6,
    ) -> int:
        """Insert missing areas; existing rows are left untouched."""
        names = list(dict.fromkeys(area_names))
        async with self.session_factory() as db:
            result = await db.execute(
                select(GeographicArea.area_name).where(GeographicArea.area_name.in_(names))
            )
            existing = set(result.scalars().all())
            added = 0
            for name in names:
                if name in existing:
                    continue
                db.add(GeographicArea(
                    area_name=name,
                    area_type=area_type,
                    scrape_interval_hours=scrape_interval_hours,
                    change_rate=Decimal("0"),
                    avg_changes_per_scrape=Decimal("0"),
                ))
                added += 1
            await db.commit()
        if added:
            logger.info(f"Seeded {added} geographic areas")
        return added

    async def list_areas(self) -> list[GeographicArea]:
        async with self.session_factory() as db:
            result = await db.execute(select(GeographicArea).order_by(GeographicArea.area_name))
            return list(result.scalars().all())

    async def get_area(self, area_name: str) -> Optional[GeographicArea]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(GeographicArea).where(GeographicArea.area_name == area_name)
            )
            return result.scalar_one_or_none()

    async def get_due_areas(self, now: datetime | None = None) -> list[str]:
        """Areas never scraped or whose next_scrape has passed, most overdue first."""
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(GeographicArea.area_name)
                .where(
                    (GeographicArea.next_scrape.is_(None))
                    | (GeographicArea.next_scrape <= now)
                )
                .order_by(GeographicArea.next_scrape.asc().nulls_first(), GeographicArea.area_name)
            )
            return list(result.scalars().all())

    async def record_area_scrape(
        self,
        area_name: str,
        policy: AdaptiveSchedulePolicy,
        scraped_at: datetime | None = None,
        area_type: str = "city",
        default_interval_hours: int = 6,
    ) -> GeographicArea:
        """
        Fold one discovery pass over an area into its adaptive schedule.

        The observed change rate is the share of the area's known listings that
        got a new snapshot since the previous pass. The first pass keeps the
        seeded interval.
        """
        scraped_at = scraped_at or datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(GeographicArea)
                .where(GeographicArea.area_name == area_name)
                .with_for_update()
            )
            area = result.scalar_one_or_none()
            if area is None:
                area = GeographicArea(
                    area_name=area_name,
                    area_type=area_type,
                    scrape_interval_hours=default_interval_hours,
                    change_rate=Decimal("0"),
                    avg_changes_per_scrape=Decimal("0"),
                )
                db.add(area)

            total = (await db.execute(
                select(func.count(PropertyMetadata.portal_id)).where(PropertyMetadata.area == area_name)
            )).scalar() or 0
            active = (await db.execute(
                select(func.count(PropertyMetadata.portal_id)).where(
                    PropertyMetadata.area == area_name,
                    PropertyMetadata.current_status == "active",
                )
            )).scalar() or 0

            if area.last_scraped is not None:
                changed = (await db.execute(
                    select(func.count(distinct(PropertySnapshot.portal_id)))
                    .join(PropertyMetadata, PropertyMetadata.portal_id == PropertySnapshot.portal_id)
                    .where(
                        PropertyMetadata.area == area_name,
                        PropertySnapshot.scraped_at >= area.last_scraped,
                    )
                )).scalar() or 0
                observed = changed / total if total else 0.0
                change_rate = policy.smooth(float(area.change_rate or 0), observed)
                avg_changes = policy.smooth(float(area.avg_changes_per_scrape or 0), float(changed))

                area.change_rate = Decimal(str(round(min(change_rate, 1.0), 4)))
                area.avg_changes_per_scrape = min(Decimal(str(round(avg_changes, 2))), MAX_AVG_CHANGES)
                area.scrape_interval_hours = policy.interval_hours(float(area.change_rate))
                logger.info(
                    f"Area {area_name}: {changed}/{total} listings changed, "
                    f"change_rate={area.change_rate}, interval={area.scrape_interval_hours}h"
                )

            area.total_properties = total
            area.active_properties = active
            area.last_scraped = scraped_at
            area.next_scrape = policy.next_scrape(scraped_at, area.scrape_interval_hours)
            await db.commit()
            return area

    # ------------------------------------------------------------------
    # Health and stats
    # ------------------------------------------------------------------

    async def record_health(self, **sample) -> int:
        """Insert a scraper_health row; keyword names match its columns."""
        async with self.session_factory() as db:
            row = ScraperHealth(checked_at=sample.pop("checked_at", None) or datetime.utcnow(), **sample)
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return row.id

    async def latest_health(self) -> Optional[ScraperHealth]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScraperHealth).order_by(ScraperHealth.checked_at.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def get_stats(self) -> dict[str, Any]:
        """Read the scraper_stats aggregate view."""
        async with self.session_factory() as db:
            result = await db.execute(text("SELECT * FROM scraper_stats"))
            return dict(result.mappings().one())
