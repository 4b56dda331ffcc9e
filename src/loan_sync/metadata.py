"""
Aladin ItemLookUp client for loan-sync.

Looks up book metadata by ISBN to fill in covers, authors and descriptions
the library API does not provide. Lookups are best-effort: every failure
resolves to None and is cached like a genuine miss.

API Documentation: https://blog.aladin.co.kr/openapi
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .cache import Cache, MemoryTTLCache

logger = logging.getLogger(__name__)

ALADIN_API_BASE = "https://www.aladin.co.kr/ttb/api"
ALADIN_API_VERSION = "20131101"


def normalize_isbn(isbn: str | None) -> str:
    """Strip hyphens and surrounding whitespace from an ISBN."""
    if not isbn:
        return ""
    return isbn.strip().replace("-", "")


@dataclass(frozen=True)
class BookInfo:
    """Book metadata from Aladin."""

    isbn: str
    title: str
    author: str = ""
    isbn13: str | None = None
    publisher: str | None = None
    pub_date: str | None = None
    description: str | None = None
    cover_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "isbn": self.isbn,
            "isbn13": self.isbn13,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "pub_date": self.pub_date,
            "description": self.description,
            "cover_url": self.cover_url,
        }


class MetadataClient:
    """
    Client for the Aladin ItemLookUp API.

    Results, including misses, are memoized per normalized ISBN for a fixed
    time-to-live.
    """

    def __init__(
        self,
        ttb_key: str | None,
        *,
        base_url: str = ALADIN_API_BASE,
        cache: Cache | None = None,
        cache_ttl_seconds: float = 3600.0,
        timeout_seconds: float = 3.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the metadata client.

        Args:
            ttb_key: Aladin TTB API key. Without one every lookup is a miss.
            base_url: API base URL (overridable for the local fake server)
            cache: Cache implementation; defaults to an in-process TTL cache
            cache_ttl_seconds: Lifetime of every cache entry
            timeout_seconds: Default per-lookup deadline
            http_client: Optional pre-built httpx client (for testing)
        """
        self.ttb_key = ttb_key
        self.base_url = base_url.rstrip("/")
        self.cache = cache if cache is not None else MemoryTTLCache()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout_seconds
        self._client = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None

    async def __aenter__(self) -> "MetadataClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def lookup(
        self, isbn: str | None, timeout_seconds: float | None = None
    ) -> BookInfo | None:
        """
        Look up a book by ISBN.

        Args:
            isbn: ISBN-10 or ISBN-13, hyphens allowed
            timeout_seconds: Override the client's default deadline

        Returns:
            BookInfo if found, None otherwise (never raises)
        """
        clean_isbn = normalize_isbn(isbn)
        if not clean_isbn:
            return None

        hit = self.cache.get(clean_isbn)
        if hit is not None:
            logger.debug(f"Cache hit for ISBN {clean_isbn}")
            return hit.value

        info = await self._fetch(clean_isbn, timeout_seconds or self.timeout)
        self.cache.set(clean_isbn, info, self.cache_ttl_seconds)
        return info

    async def _fetch(self, isbn: str, timeout: float) -> BookInfo | None:
        if not self.ttb_key:
            logger.debug("No Aladin API key configured, skipping lookup")
            return None

        params = {
            "ttbkey": self.ttb_key,
            "itemIdType": "ISBN",
            "ItemId": isbn,
            "output": "js",
            "Version": ALADIN_API_VERSION,
            "OptResult": "previewImgList,Toc",
            "Cover": "Big",
        }

        logger.debug(f"Looking up ISBN {isbn}")
        try:
            async with asyncio.timeout(timeout):
                response = await self._client.get(
                    f"{self.base_url}/ItemLookUp.aspx", params=params, timeout=timeout
                )
            if response.status_code >= 400:
                logger.warning(f"Aladin returned {response.status_code} for ISBN {isbn}")
                return None
            return self._parse_item(response.json(), isbn)
        except (TimeoutError, httpx.TimeoutException):
            logger.warning(f"Aladin lookup timed out for ISBN {isbn}")
            return None
        except Exception as e:
            logger.warning(f"Error looking up ISBN {isbn}: {e}")
            return None

    def _parse_item(self, data: Any, isbn: str) -> BookInfo | None:
        """Parse the first item of an ItemLookUp response."""
        items = data.get("item") if isinstance(data, dict) else None
        if not items:
            logger.debug(f"ISBN {isbn} not found")
            return None

        item = items[0]
        return BookInfo(
            isbn=item.get("isbn") or isbn,
            isbn13=item.get("isbn13") or None,
            title=item.get("title") or "",
            author=item.get("author") or "",
            publisher=item.get("publisher") or None,
            pub_date=item.get("pubDate") or None,
            description=item.get("description") or None,
            cover_url=item.get("cover") or None,
        )
