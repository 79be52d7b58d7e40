"""Content fingerprinting and change detection for fetched listings.

Only fields that represent meaningful content feed the fingerprint, so
re-fetching identical content never reports a spurious change.
"""

import hashlib
import json
import logging
from typing import Any, Optional

from listing_tracker.ingest.base import ListingRecord

logger = logging.getLogger(__name__)

# Volatile fields (fetch time, view counters, images order...) are excluded
FINGERPRINT_FIELDS = ("price", "title", "description")


def _canonical(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    return str(value.normalize()) if hasattr(value, "normalize") else str(value)


def compute_fingerprint(record: ListingRecord) -> str:
    """
    Compute a SHA-256 fingerprint over the content fields of a record.

    Args:
        record: Listing returned by the fetcher

    Returns:
        64 character hex digest
    """
    payload = {name: _canonical(getattr(record, name)) for name in FINGERPRINT_FIELDS}
    data = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class ChangeDetector:
    """
    Decides whether a fetched record differs from the last known state.

    The last fingerprint is read from the work queue's fast cache and, when the
    cache has nothing (first sight or after a queue reset), from the latest
    snapshot in the durable store.
    """

    def __init__(self, queue, store):
        self.queue = queue
        self.store = store

    def fingerprint(self, record: ListingRecord) -> str:
        return compute_fingerprint(record)

    async def last_fingerprint(self, listing_id: str) -> Optional[str]:
        """Return the last known fingerprint for a listing, if any."""
        cached = await self.queue.get_fingerprint(listing_id)
        if cached:
            return cached

        stored = await self.store.get_last_fingerprint(listing_id)
        if stored:
            # Warm the cache so the next check stays on the fast path
            await self.queue.set_fingerprint(listing_id, stored)
        return stored

    async def has_changed(self, listing_id: str, record: ListingRecord) -> bool:
        """
        Check whether a listing changed since it was last recorded.

        Returns:
            True if the listing is new or its content fingerprint differs
        """
        previous = await self.last_fingerprint(listing_id)
        if previous is None:
            logger.debug(f"No previous fingerprint for {listing_id}, treating as new")
            return True
        return previous != self.fingerprint(record)

    async def remember(self, listing_id: str, fingerprint: str) -> None:
        """Store the fingerprint of the state that was just persisted."""
        await self.queue.set_fingerprint(listing_id, fingerprint)
