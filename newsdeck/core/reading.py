"""Reading service: the engine surface used by the API.

Coordinates the fetch coordinator, the in-memory History and the optional
persistent store. In-memory state is always updated first; a failed store
write is reported through a WriteResult instead of being raised, so callers
can keep showing data and warn that it was not saved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Sequence

from newsdeck.core.clock import Clock
from newsdeck.core.errors import StorageError
from newsdeck.core.fetch_coordinator import ConcurrentFetchCoordinator, FeedFetchOptions, FeedFetchReport
from newsdeck.core.history import History
from newsdeck.core.models import ALL_FEEDS_URL, BOOKMARKS_URL, NEWS_URL, Feed, HistoryItem
from newsdeck.core.storage import HistoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    """Acknowledgement of a persistence attempt.

    ``persisted`` is True only when the store accepted the write. Without a
    configured store nothing is persisted and nothing failed.
    """

    persisted: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


NOT_PERSISTED = WriteResult()


class ReadingService:
    def __init__(
        self,
        coordinator: ConcurrentFetchCoordinator,
        store: HistoryStore | None,
        clock: Clock,
        fetch_options: FeedFetchOptions | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.clock = clock
        self.fetch_options = fetch_options or FeedFetchOptions()

    def _write(self, action: str, op: Callable[[HistoryStore], object]) -> WriteResult:
        if self.store is None:
            return NOT_PERSISTED
        try:
            op(self.store)
        except StorageError as e:
            logger.exception(f"Failed to persist {action}")
            return WriteResult(persisted=False, error=str(e))
        return WriteResult(persisted=True)

    async def fetch_feed(self, url: str, all_feeds: Sequence[str]) -> tuple[Feed, FeedFetchReport]:
        """Fetch one feed or a virtual aggregate.

        A failing single feed raises; aggregates report partial failure.
        """
        if url in (ALL_FEEDS_URL, NEWS_URL):
            feed, report = await self.coordinator.fetch_all(all_feeds, self.fetch_options)
            if url == NEWS_URL:
                feed = Feed(title="News", url=NEWS_URL, items=feed.items)
            return feed, report
        if url == BOOKMARKS_URL:
            # Bookmarks are local only
            return Feed(title="Bookmarks", url=BOOKMARKS_URL), FeedFetchReport()

        feed = await self.coordinator.fetch_one(url, timeout=self.fetch_options.per_source_timeout)
        return feed, FeedFetchReport(requested=1, succeeded=1)

    def load_history_metadata(self) -> History:
        """Build the in-memory History from the store's metadata tier.

        Raises StorageError when the store cannot be read.
        """
        if self.store is None:
            return History()
        return History(self.store.load_metadata())

    def load_history_item(self, item_id: str) -> HistoryItem | None:
        if self.store is None or not (item_id or "").strip():
            return None
        return self.store.load_by_id(item_id)

    def hydrate_item(self, history: History, item_id: str) -> HistoryItem | None:
        """Return the item with its body loaded, installing it into History."""
        current = history.item(item_id)
        if current is not None and current.body_hydrated:
            return current
        loaded = self.load_history_item(item_id)
        if loaded is None:
            return current
        history.hydrate(loaded)
        return history.item(item_id)

    def merge_history(self, history: History, feed: Feed | None) -> tuple[list[HistoryItem], WriteResult]:
        """Merge a fetched feed and persist the changed items."""
        changed = history.merge_feed(feed, self.clock.now())
        if not changed:
            return changed, NOT_PERSISTED
        return changed, self._write("merged items", lambda s: s.upsert(changed))

    def mark_read(self, history: History, item_id: str) -> tuple[bool, WriteResult]:
        if not (item_id or "").strip() or not history.mark_read(item_id):
            return False, NOT_PERSISTED
        return True, self._write("read state", lambda s: s.set_read(item_id, True))

    def toggle_bookmark(self, history: History, item_id: str) -> tuple[bool | None, WriteResult]:
        """Flip the bookmark; returns the new state (None if the id is unknown)."""
        if not (item_id or "").strip():
            return None, NOT_PERSISTED
        state = history.toggle_bookmark(item_id)
        if state is None:
            return None, NOT_PERSISTED
        return state, self._write("bookmark", lambda s: s.set_bookmark(item_id, state))

    def apply_insight(
        self,
        history: History,
        item_id: str,
        summary: str,
        tags: Iterable[str],
    ) -> tuple[datetime | None, WriteResult]:
        """Store an insight; returns its timestamp, or None when the id is unknown."""
        updated_at = self.clock.now()
        tags = list(tags)
        if not (item_id or "").strip() or not history.set_insight(item_id, summary, tags, updated_at):
            return None, NOT_PERSISTED
        result = self._write("insight", lambda s: s.set_insight(item_id, summary, tags, updated_at))
        return updated_at, result

    def replace_digest_items_by_date(
        self,
        history: History,
        date_key: str,
        items: Sequence[HistoryItem],
        prune: bool = False,
    ) -> tuple[list[HistoryItem], WriteResult]:
        date_key = (date_key or "").strip()
        if not date_key:
            return [], NOT_PERSISTED
        stored = history.replace_digest_items_by_date(date_key, items, prune=prune)
        result = self._write(
            f"digest items for {date_key}",
            lambda s: s.replace_digest_items_by_date(date_key, stored, prune=prune),
        )
        return stored, result

    def digest_items_by_date(self, history: History, date_key: str) -> list[HistoryItem]:
        """Cached digest items of a date; the store wins when configured."""
        if self.store is None:
            return history.digest_items_by_date(date_key)
        return self.store.digest_items_by_date(date_key)

    def load_today_articles(
        self,
        history: History,
        date_key: str,
        feeds: Iterable[str] | None,
        limit: int,
    ) -> list[HistoryItem]:
        if self.store is None:
            return history.today_article_items(date_key, feeds, self.clock.tz, limit=limit)
        return self.store.load_today_articles(date_key, feeds, limit, self.clock.tz)
