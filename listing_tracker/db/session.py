"""Async engine and session factory."""

from sqlalchemy import insert, select, text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from listing_tracker.config import settings
from listing_tracker.db.models import STATS_VIEW_SELECT, Base, GeographicArea

engine = create_async_engine(settings.database_url, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def init_db(db_engine: AsyncEngine | None = None, seed: bool = True) -> None:
    """Create tables, the scraper_stats view and the default areas.

    Safe to run repeatedly. Production databases are migrated with Alembic
    instead.
    """
    db_engine = db_engine or engine
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if conn.dialect.name == "postgresql":
            await conn.execute(text(f"CREATE OR REPLACE VIEW scraper_stats AS {STATS_VIEW_SELECT}"))
        else:
            await conn.execute(text(f"CREATE VIEW IF NOT EXISTS scraper_stats AS {STATS_VIEW_SELECT}"))

        if seed:
            existing = set((await conn.execute(select(GeographicArea.area_name))).scalars().all())
            missing = [name for name in settings.default_areas if name not in existing]
            if missing:
                await conn.execute(
                    insert(GeographicArea),
                    [
                        {
                            "area_name": name,
                            "area_type": settings.default_area_type,
                            "scrape_interval_hours": settings.default_scrape_interval_hours,
                        }
                        for name in missing
                    ],
                )
