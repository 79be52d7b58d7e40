"""SQLAlchemy database models for the Tier 1 scraper store."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ScrapeRun(Base):
    """One discovery, detail or verification pass."""

    __tablename__ = "scrape_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_type: Mapped[str] = mapped_column(String(20), nullable=False)  # 'discovery', 'detail', 'verification'
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # running, completed, failed
    properties_discovered: Mapped[int] = mapped_column(Integer, default=0)
    properties_changed: Mapped[int] = mapped_column(Integer, default=0)
    properties_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    properties_new: Mapped[int] = mapped_column(Integer, default=0)
    properties_inactive: Mapped[int] = mapped_column(Integer, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_seconds: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_scrape_runs_status", "status"),
    )


class PropertySnapshot(Base):
    """Captured state of a listing at the moment a change was detected."""

    __tablename__ = "property_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portal_id: Mapped[str] = mapped_column(String(100), nullable=False)
    scraped_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    raw_data: Mapped[dict] = mapped_column(JSONPayload, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transaction_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_snapshots_portal_id", "portal_id"),
        Index("idx_snapshots_checksum", "checksum"),
        Index("idx_snapshots_price", "price"),
    )


class PropertyChange(Base):
    """Field-level delta between two consecutive snapshots."""

    __tablename__ = "property_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    portal_id: Mapped[str] = mapped_column(String(100), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    change_type: Mapped[str] = mapped_column(String(50), nullable=False)  # price, status, description, images, ...
    field_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    snapshot_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("property_snapshots.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_changes_portal_id", "portal_id"),
        Index("idx_changes_type", "change_type"),
    )


class PropertyMetadata(Base):
    """Current rollup per listing."""

    __tablename__ = "property_metadata"

    portal_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    first_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_changed: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    scrape_count: Mapped[int] = mapped_column(Integer, default=1)
    change_count: Mapped[int] = mapped_column(Integer, default=0)
    change_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=0)  # changes per scrape, 0.0 to 1.0
    area: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # area it was discovered in
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_metadata_status", "current_status"),
        Index("idx_metadata_area", "area"),
    )


class GeographicArea(Base):
    """Slice of the catalog with its own scrape cadence."""

    __tablename__ = "geographic_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    area_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    area_type: Mapped[str] = mapped_column(String(20), nullable=False)  # 'city', 'region'
    change_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=0)
    scrape_interval_hours: Mapped[int] = mapped_column(Integer, default=6)
    last_scraped: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_scrape: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_properties: Mapped[int] = mapped_column(Integer, default=0)
    active_properties: Mapped[int] = mapped_column(Integer, default=0)
    avg_changes_per_scrape: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_areas_next_scrape", "next_scrape"),
        Index("idx_areas_type", "area_type"),
    )


class ScraperHealth(Base):
    """Point-in-time operational sample."""

    __tablename__ = "scraper_health"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    checked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    redis_connected: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    postgres_connected: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    queue_depth: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    failed_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    worker_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    avg_processing_time_ms: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    errors_last_hour: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


# Descending indexes reference the mapped attributes, so they live after the classes
Index("idx_scrape_runs_started", ScrapeRun.started_at.desc())
Index("idx_snapshots_scraped_at", PropertySnapshot.scraped_at.desc())
Index("idx_changes_changed_at", PropertyChange.changed_at.desc())
Index("idx_metadata_last_seen", PropertyMetadata.last_seen.desc())
Index("idx_metadata_change_rate", PropertyMetadata.change_rate.desc())
Index("idx_areas_change_rate", GeographicArea.change_rate.desc())
Index("idx_health_checked_at", ScraperHealth.checked_at.desc())


STATS_VIEW_SELECT = """
SELECT
  (SELECT COUNT(*) FROM property_snapshots) AS total_snapshots,
  (SELECT COUNT(*) FROM property_changes) AS total_changes,
  (SELECT COUNT(*) FROM property_metadata) AS total_properties,
  (SELECT COUNT(*) FROM property_metadata WHERE current_status = 'active') AS active_properties,
  (SELECT AVG(change_rate) FROM property_metadata) AS avg_change_rate,
  (SELECT MAX(scraped_at) FROM property_snapshots) AS last_scrape_time,
  (SELECT COUNT(*) FROM scrape_runs WHERE status = 'running') AS active_runs
"""
