"""Unit tests for the Aladin metadata client and its cache."""

import asyncio

import httpx
import pytest

from loan_sync.cache import CacheHit, MemoryTTLCache
from loan_sync.metadata import BookInfo, MetadataClient, normalize_isbn

BASE = "http://aladin.example.org/ttb/api"

ITEM = {
    "isbn": "0593135202",
    "isbn13": "9780593135204",
    "title": "Project Hail Mary",
    "author": "Andy Weir",
    "publisher": "Ballantine Books",
    "pubDate": "2021-05-04",
    "description": "A lone astronaut.",
    "cover": "https://image.example.org/cover.jpg",
}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_client(handler, **kwargs) -> MetadataClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MetadataClient("ttb-key", base_url=BASE, http_client=http, **kwargs)


class TestNormalizeIsbn:
    def test_strips_hyphens_and_whitespace(self):
        assert normalize_isbn(" 978-0-593-13520-4 ") == "9780593135204"

    def test_blank(self):
        assert normalize_isbn("") == ""
        assert normalize_isbn(None) == ""


class TestMemoryTTLCache:
    def test_miss(self):
        assert MemoryTTLCache().get("x") is None

    def test_hit_distinguishes_cached_none(self):
        cache = MemoryTTLCache()
        cache.set("x", None, 60)
        assert cache.get("x") == CacheHit(None)

    def test_entry_expires(self):
        clock = FakeClock()
        cache = MemoryTTLCache(clock=clock)
        cache.set("x", "value", 60)

        clock.now += 59
        assert cache.get("x") == CacheHit("value")

        clock.now += 1
        assert cache.get("x") is None
        assert len(cache) == 0

    def test_max_size_evicts_oldest(self):
        cache = MemoryTTLCache(max_size=2)
        cache.set("a", 1, 60)
        cache.set("b", 2, 60)
        cache.set("c", 3, 60)

        assert cache.get("a") is None
        assert cache.get("b") == CacheHit(2)
        assert cache.get("c") == CacheHit(3)


class TestLookup:
    async def test_lookup_parses_first_item(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            seen["path"] = request.url.path
            return httpx.Response(200, json={"item": [ITEM]})

        client = make_client(handler)
        info = await client.lookup("978-0593135204")

        assert info == BookInfo(
            isbn="0593135202",
            isbn13="9780593135204",
            title="Project Hail Mary",
            author="Andy Weir",
            publisher="Ballantine Books",
            pub_date="2021-05-04",
            description="A lone astronaut.",
            cover_url="https://image.example.org/cover.jpg",
        )
        assert seen["path"] == "/ttb/api/ItemLookUp.aspx"
        assert seen["ItemId"] == "9780593135204"
        assert seen["itemIdType"] == "ISBN"
        assert seen["ttbkey"] == "ttb-key"
        assert seen["output"] == "js"

    async def test_blank_isbn_makes_no_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"item": [ITEM]})

        client = make_client(handler)
        assert await client.lookup("") is None
        assert await client.lookup("   ") is None
        assert calls == []

    async def test_positive_result_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"item": [ITEM]})

        client = make_client(handler)
        first = await client.lookup("9780593135204")
        second = await client.lookup("978-0593135204")

        assert first == second
        assert len(calls) == 1

    async def test_empty_result_is_negatively_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"item": []})

        client = make_client(handler)
        assert await client.lookup("9790000000000") is None
        assert await client.lookup("9790000000000") is None
        assert len(calls) == 1

    async def test_non_2xx_returns_none_and_caches(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = make_client(handler)
        assert await client.lookup("9780593135204") is None
        assert await client.lookup("9780593135204") is None
        assert len(calls) == 1

    async def test_malformed_json_returns_none(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        assert await client.lookup("9780593135204") is None

    async def test_transport_error_returns_none(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        assert await client.lookup("9780593135204") is None

    async def test_timeout_returns_none(self):
        async def handler(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, json={"item": [ITEM]})

        client = make_client(handler)
        assert await client.lookup("9780593135204", timeout_seconds=0.05) is None

    async def test_cache_entry_expires_after_ttl(self):
        clock = FakeClock()
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"item": [ITEM]})

        client = make_client(handler, cache=MemoryTTLCache(clock=clock), cache_ttl_seconds=3600)
        await client.lookup("9780593135204")
        clock.now += 3601
        await client.lookup("9780593135204")

        assert len(calls) == 2

    async def test_no_key_is_a_miss(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"item": [ITEM]})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = MetadataClient(None, base_url=BASE, http_client=http)

        assert await client.lookup("9780593135204") is None
        assert calls == []


@pytest.mark.parametrize("missing", ["cover", "publisher", "description"])
async def test_missing_optional_fields_become_none(missing):
    item = {k: v for k, v in ITEM.items() if k != missing}
    client = make_client(lambda request: httpx.Response(200, json={"item": [item]}))

    info = await client.lookup("9780593135204")

    assert info is not None
    field = {"cover": "cover_url"}.get(missing, missing)
    assert getattr(info, field) is None
