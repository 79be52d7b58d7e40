"""Tests for the HTTP catalog fetcher."""

from decimal import Decimal

import httpx
import pytest

from listing_tracker.ingest.base import FetchError
from listing_tracker.ingest.http_fetcher import (
    HttpCatalogFetcher,
    extract_listing_ids,
    parse_listing,
)

BASE = "https://catalog.test"

DETAIL = {
    "realEstate": {
        "id": 101,
        "title": "Trilocale con terrazzo",
        "description": "Luminoso, terzo piano",
        "contract": "rent",
        "price": {"value": 1200, "formattedValue": "€ 1.200/mese"},
        "multimedia": {"images": [{"url": "https://img.test/1.jpg"}, {"caption": "no url"}]},
    }
}


def make_fetcher(handler) -> HttpCatalogFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpCatalogFetcher(
        base_url=BASE,
        listing_url_template="/api/listing/{listing_id}/",
        listing_page_template="/annunci/{listing_id}/",
        client=client,
    )


class TestExtractListingIds:
    def test_results_container_with_nested_ids(self):
        payload = {"results": [{"realEstate": {"id": 1}}, {"realEstate": {"id": "2"}}, {"id": 3}]}
        assert extract_listing_ids(payload) == ["1", "2", "3"]

    def test_duplicates_and_junk_are_dropped(self):
        payload = {"listings": [{"id": 1}, {"id": 1}, "junk", {"name": "no id"}]}
        assert extract_listing_ids(payload) == ["1"]

    def test_bare_list(self):
        assert extract_listing_ids([{"id": 9}]) == ["9"]

    def test_unknown_shape_is_empty(self):
        assert extract_listing_ids({"count": 0}) == []
        assert extract_listing_ids(None) == []


class TestParseListing:
    def test_wrapped_listing(self):
        record = parse_listing("101", DETAIL, source_url="https://catalog.test/annunci/101/")
        assert record.listing_id == "101"
        assert record.price == Decimal("1200")
        assert record.transaction_type == "rent"
        assert record.images == ["https://img.test/1.jpg"]
        assert record.raw["title"] == "Trilocale con terrazzo"
        assert record.status == "active"

    def test_scalar_price_and_default_contract(self):
        record = parse_listing("5", {"id": 5, "price": "99000"})
        assert record.price == Decimal("99000")
        assert record.transaction_type == "sale"

    def test_unparseable_price_is_none(self):
        record = parse_listing("5", {"id": 5, "price": {"value": "su richiesta"}})
        assert record.price is None

    def test_non_dict_payload(self):
        assert parse_listing("5", ["not", "a", "listing"]) is None
        assert parse_listing("5", {}) is None


@pytest.mark.asyncio
async def test_fetch_page_returns_ids():
    def handler(request):
        assert request.url.params["pag"] == "1"
        return httpx.Response(200, json={"results": [{"realEstate": {"id": 1}}, {"realEstate": {"id": 2}}]})

    fetcher = make_fetcher(handler)
    try:
        assert await fetcher.fetch_page(f"{BASE}/search?area=milano&pag=1") == ["1", "2"]
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_fetch_page_server_error_raises():
    fetcher = make_fetcher(lambda request: httpx.Response(503))
    with pytest.raises(FetchError):
        await fetcher.fetch_page(f"{BASE}/search")
    await fetcher.close()


@pytest.mark.asyncio
async def test_fetch_page_not_found_is_empty():
    fetcher = make_fetcher(lambda request: httpx.Response(404))
    assert await fetcher.fetch_page(f"{BASE}/search") == []
    await fetcher.close()


@pytest.mark.asyncio
async def test_fetch_listing():
    def handler(request):
        assert request.url.path == "/api/listing/101/"
        return httpx.Response(200, json=DETAIL)

    fetcher = make_fetcher(handler)
    record = await fetcher.fetch_listing("101")
    assert record.title == "Trilocale con terrazzo"
    assert record.source_url == f"{BASE}/annunci/101/"
    await fetcher.close()


@pytest.mark.asyncio
async def test_fetch_listing_invalid_json_raises():
    fetcher = make_fetcher(lambda request: httpx.Response(200, text="<html>captcha</html>"))
    with pytest.raises(FetchError, match="Invalid JSON"):
        await fetcher.fetch_listing("101")
    await fetcher.close()


@pytest.mark.asyncio
async def test_fetch_listing_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = make_fetcher(handler)
    with pytest.raises(FetchError):
        await fetcher.fetch_listing("101")
    await fetcher.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,expected",
    [(200, True), (204, True), (404, False), (410, False)],
)
async def test_probe_definitive_answers(status, expected):
    def handler(request):
        assert request.method == "HEAD"
        return httpx.Response(status)

    fetcher = make_fetcher(handler)
    assert await fetcher.probe_exists("101") is expected
    await fetcher.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [403, 429, 500, 503])
async def test_probe_ambiguous_status_raises(status):
    fetcher = make_fetcher(lambda request: httpx.Response(status))
    with pytest.raises(FetchError):
        await fetcher.probe_exists("101")
    await fetcher.close()


@pytest.mark.asyncio
async def test_probe_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    fetcher = make_fetcher(handler)
    with pytest.raises(FetchError):
        await fetcher.probe_exists("101")
    await fetcher.close()
