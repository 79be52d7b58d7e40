"""Client for the downstream core ingestion service."""

import logging
import time
from typing import Any, Optional

import httpx

from listing_tracker import metrics
from listing_tracker.config import settings

logger = logging.getLogger(__name__)


class IngestionError(RuntimeError):
    """Raised when the core service rejects a payload or cannot be reached."""
    pass


class CoreServiceClient:
    """Forwards standardized listings and removals to the core service.

    Delivery is at-least-once: the endpoint is expected to tolerate duplicates.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = (api_url if api_url is not None else settings.ingest_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ingest_api_key
        self._http_client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.ingest_timeout_seconds)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _post(self, payload: dict[str, Any], kind: str) -> bool:
        if not self.enabled:
            logger.warning("INGEST_API_KEY not set - skipping core service ingestion")
            metrics.record_ingestion(kind, "skipped")
            return False

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.api_url}/properties/ingest",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            metrics.record_ingestion(kind, "error")
            raise IngestionError(f"Core service unreachable: {e}") from e

        if response.status_code >= 400:
            metrics.record_ingestion(kind, "error")
            raise IngestionError(
                f"Core service rejected {payload.get('portal_id')}: "
                f"HTTP {response.status_code} {response.text[:200]}"
            )

        metrics.record_ingestion(kind, "ok")
        logger.debug(f"Sent {kind} payload for {payload.get('portal_id')}")
        return True

    async def ingest(self, payload: dict[str, Any]) -> bool:
        """
        Send one standardized listing.

        Returns:
            True if delivered, False if skipped for lack of credentials

        Raises:
            IngestionError: On transport failure or non-2xx response
        """
        return await self._post(payload, "ingest")

    async def mark_inactive(self, listing_id: str, reason: str = "verified_removed") -> bool:
        """Tell the core service a listing was removed from the catalog."""
        payload = {
            "portal": settings.portal_name,
            "portal_id": listing_id,
            "country": settings.portal_country,
            "data": None,
            "status": "inactive",
            "inactive_reason": reason,
            "last_seen": int(time.time() * 1000),
        }
        return await self._post(payload, "inactive")
