"""HTTP feed source.

Downloads RSS/Atom documents with httpx and parses them with feedparser.
Parsing is CPU-bound, so it runs in the default executor.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import feedparser
import httpx

from newsdeck.core.errors import FeedFetchError, FetchErrorType
from newsdeck.core.models import Feed, SourceItem

logger = logging.getLogger(__name__)

# Maximum feed document size (5MB)
MAX_FEED_SIZE = 5 * 1024 * 1024

FETCH_TIMEOUT = 30.0


class FeedSource(Protocol):
    """Anything that can turn a feed URL into a parsed Feed."""

    async def fetch(self, url: str) -> Feed:
        ...


def _entry_value(entry: Any, key: str) -> str:
    value = entry.get(key, "")
    return value.strip() if isinstance(value, str) else ""


def _entry_date(entry: Any) -> datetime | None:
    # feedparser normalizes dates to UTC struct_time
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            try:
                return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
            except (OverflowError, ValueError, TypeError):
                continue
    return None


def _entry_body(entry: Any) -> str:
    content = entry.get("content")
    if isinstance(content, list) and content:
        first = content[0]
        value = first.get("value", "") if hasattr(first, "get") else ""
        return value if isinstance(value, str) else ""
    return ""


def parse_feed_document(content: bytes | str, url: str) -> Feed:
    """Parse a raw RSS/Atom document into a Feed.

    Raises FeedFetchError(PARSE_ERROR) when the document is not a feed at all.
    Recoverable parser warnings ("bozo" feeds that still have entries) are
    logged and the entries kept.
    """
    parsed = feedparser.parse(content)

    if parsed.bozo and not parsed.entries:
        reason = getattr(parsed, "bozo_exception", "unreadable document")
        raise FeedFetchError(f"Could not parse feed: {reason}", url, FetchErrorType.PARSE_ERROR)
    if parsed.bozo:
        logger.warning(f"Feed parsing warning for {url}: {getattr(parsed, 'bozo_exception', '')}")

    feed_title = (parsed.feed.get("title") or "").strip() or url
    items = []
    for entry in parsed.entries:
        published_text = _entry_value(entry, "published") or _entry_value(entry, "updated")
        items.append(
            SourceItem(
                guid=_entry_value(entry, "id"),
                link=_entry_value(entry, "link"),
                title=_entry_value(entry, "title"),
                published_text=published_text,
                published_date=_entry_date(entry),
                description=_entry_value(entry, "summary"),
                body=_entry_body(entry),
                origin_feed_url=url,
                origin_feed_title=feed_title,
            )
        )
    return Feed(title=feed_title, url=url, items=items)


class HttpFeedSource:
    """Fetches feeds over HTTP. One shared client, created lazily."""

    def __init__(self, timeout: float = FETCH_TIMEOUT) -> None:
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=20),
                headers={
                    "User-Agent": "newsdeck/1.0 (feed reader)",
                    "Accept": "application/rss+xml,application/atom+xml,application/xml;q=0.9,*/*;q=0.8",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> Feed:
        url = (url or "").strip()
        if not url.startswith(("http://", "https://")):
            raise FeedFetchError(f"Unsupported feed URL: {url!r}", url, FetchErrorType.INVALID_URL)

        try:
            client = await self._get_client()
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise FeedFetchError(f"Request timed out after {self._timeout}s", url, FetchErrorType.TIMEOUT) from e
        except httpx.HTTPError as e:
            raise FeedFetchError(f"Connection error: {e}", url, FetchErrorType.CONNECTION_ERROR) from e

        if response.status_code >= 500:
            raise FeedFetchError(f"Server error: {response.status_code}", url, FetchErrorType.HTTP_5XX)
        if response.status_code >= 400:
            raise FeedFetchError(f"Client error: {response.status_code}", url, FetchErrorType.HTTP_4XX)
        if len(response.content) > MAX_FEED_SIZE:
            raise FeedFetchError(
                f"Feed too large: {len(response.content)} bytes", url, FetchErrorType.PARSE_ERROR
            )

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, parse_feed_document, response.content, url)
