"""JSON endpoint fetcher for the listing catalog."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from listing_tracker.config import settings
from listing_tracker.ingest.base import BaseCatalogFetcher, FetchError, ListingRecord

logger = logging.getLogger(__name__)

# Container keys seen in search responses, in lookup order
RESULT_CONTAINERS = ("results", "listings", "realEstates")

# Transport errors that make an answer ambiguous
TRANSPORT_EXC = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.ReadError,
)


def extract_listing_entries(payload: Any) -> list:
    """Return the list of listing entries from any known response shape."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in RESULT_CONTAINERS:
            entries = payload.get(key)
            if isinstance(entries, list):
                return entries
    return []


def extract_listing_ids(payload: Any) -> list[str]:
    """
    Extract listing ids from a search response.

    Each entry carries its id either as ``realEstate.id`` or ``id``. Order is
    preserved and duplicates within the page are dropped.
    """
    ids: list[str] = []
    for entry in extract_listing_entries(payload):
        if not isinstance(entry, dict):
            continue
        real_estate = entry.get("realEstate") or {}
        listing_id = real_estate.get("id") if isinstance(real_estate, dict) else None
        listing_id = listing_id or entry.get("id")
        if listing_id is not None:
            ids.append(str(listing_id))
    return list(dict.fromkeys(ids))


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_listing(listing_id: str, payload: dict, source_url: Optional[str] = None) -> Optional[ListingRecord]:
    """
    Build a ListingRecord from a listing detail response.

    Accepts either the bare real-estate object or one wrapped in
    ``realEstate``/``listing``. Returns None when no listing object is found.
    """
    if not isinstance(payload, dict):
        return None
    real_estate = payload.get("realEstate") or payload.get("listing") or payload
    if not isinstance(real_estate, dict) or not real_estate:
        return None

    price_block = real_estate.get("price")
    price = price_block.get("value") if isinstance(price_block, dict) else price_block

    images = []
    multimedia = real_estate.get("multimedia") or {}
    for image in multimedia.get("images") or []:
        if isinstance(image, dict) and image.get("url"):
            images.append(image["url"])

    contract = real_estate.get("contract")
    transaction_type = settings.transaction_type
    if contract in ("sale", "rent"):
        transaction_type = contract

    return ListingRecord(
        listing_id=str(real_estate.get("id") or listing_id),
        price=_to_decimal(price),
        title=real_estate.get("title"),
        description=real_estate.get("description"),
        status="active",
        transaction_type=transaction_type,
        images=images,
        source_url=source_url,
        raw=real_estate,
    )


class HttpCatalogFetcher(BaseCatalogFetcher):
    """Fetcher for the catalog's internal JSON endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        listing_url_template: Optional[str] = None,
        listing_page_template: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the fetcher.

        Args:
            base_url: Catalog origin (defaults to settings)
            listing_url_template: Path template of the listing JSON endpoint
            listing_page_template: Path template of the public listing page (probes)
            client: Pre-configured httpx client (tests)
        """
        self.base_url = (base_url or settings.catalog_base_url).rstrip("/")
        self.listing_url_template = listing_url_template or settings.listing_url_template
        self.listing_page_template = listing_page_template or settings.listing_page_template
        self._http_client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.fetch_timeout_seconds,
                follow_redirects=True,
                headers={
                    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                    "Accept": "application/json, text/plain, */*",
                    "Accept-Language": "it-IT,it;q=0.9,en;q=0.8",
                },
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def listing_url(self, listing_id: str) -> str:
        return f"{self.base_url}{self.listing_url_template.format(listing_id=listing_id)}"

    def listing_page_url(self, listing_id: str) -> str:
        return f"{self.base_url}{self.listing_page_template.format(listing_id=listing_id)}"

    async def _get_json(self, url: str) -> Optional[Any]:
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise FetchError(f"Request to {url} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise FetchError(f"HTTP {response.status_code} for {url}")

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}") from e

    async def fetch_page(self, url: str) -> list[str]:
        payload = await self._get_json(url)
        if payload is None:
            return []
        ids = extract_listing_ids(payload)
        logger.debug(f"Found {len(ids)} listing ids on {url}")
        return ids

    async def fetch_listing(self, listing_id: str) -> Optional[ListingRecord]:
        payload = await self._get_json(self.listing_url(listing_id))
        if payload is None:
            logger.info(f"Listing {listing_id} not found (404)")
            return None
        return parse_listing(listing_id, payload, source_url=self.listing_page_url(listing_id))

    async def probe_exists(self, listing_id: str) -> bool:
        """
        HEAD the public listing page.

        Returns:
            True on 2xx, False on 404/410

        Raises:
            FetchError: On any other status or transport error
        """
        client = await self._get_client()
        url = self.listing_page_url(listing_id)
        try:
            response = await client.head(url, timeout=settings.probe_timeout_seconds)
        except TRANSPORT_EXC as e:
            raise FetchError(f"Probe for {listing_id} failed: {e}") from e

        if 200 <= response.status_code < 300:
            return True
        if response.status_code in (404, 410):
            return False
        raise FetchError(f"Ambiguous probe status {response.status_code} for {listing_id}")
