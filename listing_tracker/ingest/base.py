"""Base fetcher interface for the external catalog."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


@dataclass
class ListingRecord:
    """Canonical listing returned by a fetcher."""

    listing_id: str
    price: Optional[Decimal] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: str = "active"
    transaction_type: Optional[str] = None
    currency: str = "EUR"
    images: list[str] = field(default_factory=list)
    source_url: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)
    fetched_at: datetime = None

    def __post_init__(self):
        if self.fetched_at is None:
            self.fetched_at = datetime.utcnow()
        if self.price is not None and not isinstance(self.price, Decimal):
            self.price = Decimal(str(self.price))

    def tracked_fields(self) -> dict[str, Any]:
        """Fields compared field-by-field when a change is recorded."""
        return {
            "price": self.price,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "images": list(self.images),
        }


class FetchError(RuntimeError):
    """Raised when a page, listing or probe cannot be retrieved or parsed."""
    pass


class ListingUnavailableError(RuntimeError):
    """Raised when the fetcher returned no record for a listing id."""
    pass


class BaseCatalogFetcher(ABC):
    """Abstract base class for catalog fetchers.

    Implementations must be safe to use from many worker processes at once;
    they keep no state shared across workers.
    """

    @abstractmethod
    async def fetch_listing(self, listing_id: str) -> Optional[ListingRecord]:
        """
        Fetch the full record of one listing.

        Returns:
            ListingRecord, or None when the listing could not be retrieved

        Raises:
            FetchError: On transport or parse failure
        """
        pass

    @abstractmethod
    async def fetch_page(self, url: str) -> list[str]:
        """Fetch one search result page and return the listing ids on it."""
        pass

    @abstractmethod
    async def probe_exists(self, listing_id: str) -> bool:
        """
        Cheap existence check for a listing.

        Raises:
            FetchError: When the answer is ambiguous (timeouts, 5xx, ...)
        """
        pass

    async def close(self):
        """Release network resources."""
        pass
