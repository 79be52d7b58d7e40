"""Shared fixtures: in-memory Redis, SQLite store and fake collaborators."""

from typing import Optional

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from listing_tracker.db.session import init_db
from listing_tracker.db.store import TrackerStore
from listing_tracker.ingest.base import BaseCatalogFetcher, FetchError, ListingRecord
from listing_tracker.worker.work_queue import WorkQueue


class FakeFetcher(BaseCatalogFetcher):
    """Scriptable catalog: listings, pages and probe answers are plain dicts."""

    def __init__(self):
        self.listings: dict[str, ListingRecord] = {}
        self.pages: dict[str, list[str]] = {}
        self.page_errors: set[str] = set()
        self.exists: dict[str, bool] = {}
        self.failing: set[str] = set()
        self.fetch_calls: list[str] = []
        self.page_calls: list[str] = []
        self.probe_calls: list[str] = []

    def add_listing(self, listing_id: str, price=250000, title="Appartamento", **kwargs) -> ListingRecord:
        record = ListingRecord(listing_id=listing_id, price=price, title=title, **kwargs)
        self.listings[listing_id] = record
        return record

    async def fetch_listing(self, listing_id: str) -> Optional[ListingRecord]:
        self.fetch_calls.append(listing_id)
        if listing_id in self.failing:
            raise FetchError(f"boom {listing_id}")
        return self.listings.get(listing_id)

    async def fetch_page(self, url: str) -> list[str]:
        self.page_calls.append(url)
        if url in self.page_errors:
            raise FetchError(f"HTTP 503 for {url}")
        return list(self.pages.get(url, []))

    async def probe_exists(self, listing_id: str) -> bool:
        self.probe_calls.append(listing_id)
        answer = self.exists.get(listing_id, True)
        if answer is None:
            raise FetchError("timeout")
        return answer


class FakeIngestion:
    """Records what would be sent to the core service."""

    def __init__(self, fail: bool = False, fail_inactive: bool = False):
        self.fail = fail
        self.fail_inactive = fail_inactive
        self.ingested: list[dict] = []
        self.inactive: list[tuple[str, str]] = []

    async def ingest(self, payload: dict) -> bool:
        if self.fail:
            from listing_tracker.notify.core_client import IngestionError

            raise IngestionError("core service down")
        self.ingested.append(payload)
        return True

    async def mark_inactive(self, listing_id: str, reason: str = "verified_removed") -> bool:
        if self.fail_inactive:
            from listing_tracker.notify.core_client import IngestionError

            raise IngestionError("core service down")
        self.inactive.append((listing_id, reason))
        return True

    async def close(self):
        pass


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def queue(redis_client):
    return WorkQueue(namespace="test", client=redis_client)


@pytest.fixture
async def engine(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return TrackerStore(session_factory)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def ingestion():
    return FakeIngestion()
