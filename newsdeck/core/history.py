"""In-memory reading history and the merge engine.

History is the single owner of the item map. Every public method takes the
lock and hands out copies, so callers never alias the owned records.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Iterable

from newsdeck.core.clock import date_key_in
from newsdeck.core.models import (
    ALL_FEEDS_URL,
    BOOKMARKS_URL,
    NEWS_URL,
    Feed,
    HistoryItem,
    ItemKind,
    derive_item_id,
    normalize_tags,
    sort_by_recency,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Fetch-provided fields a merge may refresh on an existing article
_MERGE_TEXT_FIELDS = (
    "title",
    "description",
    "body",
    "link",
    "published_text",
    "origin_feed_title",
    "origin_feed_url",
)


class History:
    """Cached history items keyed by id. Thread-safe."""

    def __init__(self, items: dict[str, HistoryItem] | None = None) -> None:
        self._items: dict[str, HistoryItem] = dict(items or {})
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._items

    def item(self, item_id: str) -> HistoryItem | None:
        with self._lock:
            found = self._items.get(item_id)
            return found.copy() if found else None

    def items(self) -> list[HistoryItem]:
        with self._lock:
            return [i.copy() for i in self._items.values()]

    def merge_feed(self, feed: Feed | None, now: datetime) -> list[HistoryItem]:
        """Merge fetched items and return copies of those that must be persisted.

        New identities become unread articles. Existing articles only take
        non-empty fetch fields that differ; user-owned fields are left alone.
        Existing digest ids are never reinterpreted as articles.
        """
        if feed is None:
            return []

        changed: dict[str, HistoryItem] = {}
        skipped = 0
        with self._lock:
            for fresh in feed.items:
                item_id = derive_item_id(fresh)
                if not item_id:
                    skipped += 1
                    continue

                existing = self._items.get(item_id)
                if existing is None:
                    created = HistoryItem(
                        id=item_id,
                        kind=ItemKind.ARTICLE,
                        title=fresh.title,
                        description=fresh.description,
                        body=fresh.body,
                        link=fresh.link,
                        published_text=fresh.published_text,
                        published_date=fresh.published_date,
                        origin_feed_title=fresh.origin_feed_title,
                        origin_feed_url=fresh.origin_feed_url,
                        saved_at=now,
                        body_hydrated=True,
                    )
                    self._items[item_id] = created
                    changed[item_id] = created
                    continue

                if existing.kind == ItemKind.DIGEST:
                    continue

                updated = False
                for name in _MERGE_TEXT_FIELDS:
                    value = getattr(fresh, name)
                    if value and value != getattr(existing, name):
                        setattr(existing, name, value)
                        updated = True
                if fresh.published_date is not None and fresh.published_date != existing.published_date:
                    existing.published_date = fresh.published_date
                    updated = True
                if fresh.body:
                    existing.body_hydrated = True

                if updated:
                    existing.saved_at = now
                    changed[item_id] = existing

            result = [i.copy() for i in changed.values()]

        if skipped:
            logger.debug(f"Skipped {skipped} items without identity from {feed.url}")
        return result

    def hydrate(self, item: HistoryItem) -> None:
        """Fill in the body of a known item from a fully loaded copy.

        Only the body is taken over; the in-memory record stays authoritative
        for every other field. Unknown ids are installed as loaded.
        """
        with self._lock:
            existing = self._items.get(item.id)
            if existing is None:
                installed = item.copy()
                installed.body_hydrated = True
                self._items[item.id] = installed
                return
            if not existing.body_hydrated:
                existing.body = item.body
                existing.body_hydrated = True

    def mark_read(self, item_id: str) -> bool:
        """Mark an item as read. Returns True if it existed."""
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False
            item.is_read = True
            return True

    def toggle_bookmark(self, item_id: str) -> bool | None:
        """Flip the bookmark flag. Returns the new state, or None if absent."""
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return None
            item.is_bookmarked = not item.is_bookmarked
            return item.is_bookmarked

    def set_insight(self, item_id: str, summary: str, tags: Iterable[str], updated_at: datetime) -> bool:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False
            item.ai_summary = summary
            item.ai_tags = normalize_tags(tags)
            item.ai_updated_at = updated_at
            return True

    def items_by_feed(self, feed_url: str) -> list[HistoryItem]:
        """Items for a feed or virtual view, newest first."""
        with self._lock:
            if feed_url == ALL_FEEDS_URL:
                selected = [i for i in self._items.values() if i.kind == ItemKind.ARTICLE]
            elif feed_url == BOOKMARKS_URL:
                selected = [i for i in self._items.values() if i.is_bookmarked]
            elif feed_url == NEWS_URL:
                selected = [i for i in self._items.values() if i.kind == ItemKind.DIGEST]
            else:
                selected = [
                    i for i in self._items.values()
                    if i.kind == ItemKind.ARTICLE and i.origin_feed_url == feed_url
                ]
            return sort_by_recency([i.copy() for i in selected])

    def digest_items_by_date(self, date_key: str) -> list[HistoryItem]:
        """Digest items of one date in topic order."""
        with self._lock:
            selected = [
                i.copy() for i in self._items.values()
                if i.kind == ItemKind.DIGEST and i.digest_date == date_key
            ]
        return sorted(selected, key=lambda i: (i.effective_date or _EPOCH, i.id))

    def replace_digest_items_by_date(
        self,
        date_key: str,
        items: Iterable[HistoryItem],
        prune: bool = False,
    ) -> list[HistoryItem]:
        """Store digest items for a date; with prune, drop that date's other digests."""
        stored: list[HistoryItem] = []
        with self._lock:
            for item in items:
                digest = item.copy()
                digest.kind = ItemKind.DIGEST
                digest.digest_date = date_key
                digest.body_hydrated = True
                self._items[digest.id] = digest
                stored.append(digest.copy())
            if prune:
                keep = {i.id for i in stored}
                stale = [
                    i.id for i in self._items.values()
                    if i.kind == ItemKind.DIGEST and i.digest_date == date_key and i.id not in keep
                ]
                for item_id in stale:
                    del self._items[item_id]
        return stored

    def related_items(self, item_id: str) -> list[HistoryItem]:
        """Articles referenced by a digest; ids that no longer exist are skipped."""
        with self._lock:
            digest = self._items.get(item_id)
            if digest is None:
                return []
            return [self._items[r].copy() for r in digest.related_ids if r in self._items]

    def today_article_items(
        self,
        date_key: str,
        feeds: Iterable[str] | None,
        tz: tzinfo,
        limit: int = 0,
    ) -> list[HistoryItem]:
        """Articles whose effective date falls on ``date_key`` in ``tz``."""
        allowed = {f for f in (feeds or []) if f}
        with self._lock:
            selected = []
            for item in self._items.values():
                if item.kind != ItemKind.ARTICLE:
                    continue
                if allowed and item.origin_feed_url not in allowed:
                    continue
                effective = item.effective_date
                if effective is None or date_key_in(effective, tz) != date_key:
                    continue
                selected.append(item.copy())
        selected = sort_by_recency(selected)
        if limit > 0:
            selected = selected[:limit]
        return selected
