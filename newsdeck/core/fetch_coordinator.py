"""Concurrent multi-feed fetching with per-feed and batch timeouts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable

import httpx

from newsdeck.core.clock import Clock
from newsdeck.core.errors import FeedFetchError
from newsdeck.core.models import ALL_FEEDS_URL, Feed, SourceItem
from newsdeck.providers.feeds import FeedSource

logger = logging.getLogger(__name__)

DEFAULT_PER_FEED_TIMEOUT = 8.0
DEFAULT_BATCH_TIMEOUT = 12.0

ALL_FEEDS_TITLE = "All Feeds"


@dataclass(frozen=True)
class FeedFetchOptions:
    """Time bounds in seconds; zero or negative disables a bound."""

    per_source_timeout: float = DEFAULT_PER_FEED_TIMEOUT
    batch_timeout: float = DEFAULT_BATCH_TIMEOUT


@dataclass
class FeedFetchReport:
    """Outcome counts of one multi-feed fetch."""

    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0

    @property
    def partial(self) -> bool:
        return self.failed > 0 or self.timed_out > 0

    def status_message(self) -> str:
        """User-facing summary; empty when there is nothing to report."""
        if self.requested <= 1:
            return ""
        if self.timed_out > 0:
            if self.timed_out == 1:
                return "1 feed timed out"
            return f"{self.timed_out} feeds timed out"
        if self.failed > 0:
            if self.failed == 1:
                return "1 feed failed to load"
            return f"{self.failed} feeds failed to load"
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timed_out": self.timed_out,
        }


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return isinstance(exc, FeedFetchError) and exc.timed_out


class ConcurrentFetchCoordinator:
    """Fans feed URLs out to a FeedSource and aggregates the results.

    A failing or slow feed never aborts its siblings; it only shows up in the
    report. Items that carry no date are stamped with the time they arrived.
    """

    def __init__(self, source: FeedSource, clock: Clock) -> None:
        self._source = source
        self._clock = clock

    async def fetch_one(self, url: str, timeout: float = 0) -> Feed:
        """Fetch a single feed. Errors propagate to the caller."""
        url = (url or "").strip()
        if not url:
            raise ValueError("feed url is empty")
        if timeout > 0:
            feed = await asyncio.wait_for(self._source.fetch(url), timeout=timeout)
        else:
            feed = await self._source.fetch(url)
        return self._stamp(feed)

    def _stamp(self, feed: Feed) -> Feed:
        seen_at = self._clock.now()
        items = [
            item if item.published_date is not None else replace(item, seen_at=seen_at)
            for item in feed.items
        ]
        return Feed(title=feed.title, url=feed.url, items=items)

    async def fetch_all(
        self,
        urls: Iterable[str],
        options: FeedFetchOptions | None = None,
    ) -> tuple[Feed, FeedFetchReport]:
        """Fetch every URL concurrently within the configured bounds."""
        opts = options or FeedFetchOptions()
        # Blank URLs are not requests
        urls = [u.strip() for u in urls if (u or "").strip()]
        report = FeedFetchReport(requested=len(urls))

        tasks: list[tuple[str, asyncio.Task]] = []
        for url in urls:
            task = asyncio.create_task(self.fetch_one(url, timeout=opts.per_source_timeout))
            tasks.append((url, task))

        if tasks:
            batch_timeout = opts.batch_timeout if opts.batch_timeout > 0 else None
            _, pending = await asyncio.wait([t for _, t in tasks], timeout=batch_timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Collected in URL order so the stable sort keeps fetch order on ties
        items: list[SourceItem] = []
        for url, task in tasks:
            if task.cancelled():
                report.timed_out += 1
                logger.warning(f"Feed {url} did not finish within the batch timeout")
                continue
            exc = task.exception()
            if exc is None:
                report.succeeded += 1
                items.extend(task.result().items)
            elif _is_timeout(exc):
                report.timed_out += 1
                logger.warning(f"Feed {url} timed out")
            else:
                report.failed += 1
                logger.warning(f"Feed {url} failed: {type(exc).__name__}: {exc}")

        items = sorted(items, key=lambda i: i.effective_date, reverse=True)

        logger.info(
            f"Fetched {report.succeeded}/{report.requested} feeds "
            f"({report.failed} failed, {report.timed_out} timed out, {len(items)} items)"
        )
        return Feed(title=ALL_FEEDS_TITLE, url=ALL_FEEDS_URL, items=items), report
