"""Feed and history item models.

SourceItem is what a feed source hands back for one entry; HistoryItem is the
persisted record the reader keeps per identity, carrying the user-owned state
(read, bookmark, AI annotations) on top of the fetched fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

# Virtual feed URLs for aggregated views
ALL_FEEDS_URL = "internal://all"
BOOKMARKS_URL = "internal://bookmarks"
NEWS_URL = "internal://news"

VIRTUAL_FEED_URLS = {ALL_FEEDS_URL, BOOKMARKS_URL, NEWS_URL}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ItemKind(str, Enum):
    """Discriminator between fetched articles and generated digest topics."""

    ARTICLE = "article"
    DIGEST = "news_digest"

    @classmethod
    def parse(cls, value: str | None) -> ItemKind:
        if value == cls.DIGEST.value:
            return cls.DIGEST
        return cls.ARTICLE


@dataclass(frozen=True)
class SourceItem:
    """One entry produced by a feed source."""

    guid: str = ""
    link: str = ""
    title: str = ""
    published_text: str = ""
    published_date: datetime | None = None
    description: str = ""
    body: str = ""
    origin_feed_url: str = ""
    origin_feed_title: str = ""
    seen_at: datetime | None = None

    @property
    def effective_date(self) -> datetime:
        return as_aware(self.published_date or self.seen_at) or _EPOCH


@dataclass
class Feed:
    """A fetched feed, or the aggregate of several."""

    title: str
    url: str
    items: list[SourceItem] = field(default_factory=list)


@dataclass
class HistoryItem:
    """Persisted reading state for one identity."""

    id: str
    kind: ItemKind = ItemKind.ARTICLE
    title: str = ""
    description: str = ""
    body: str = ""
    link: str = ""
    published_text: str = ""
    published_date: datetime | None = None
    origin_feed_title: str = ""
    origin_feed_url: str = ""

    is_read: bool = False
    is_bookmarked: bool = False
    saved_at: datetime | None = None

    ai_summary: str = ""
    ai_tags: list[str] = field(default_factory=list)
    ai_updated_at: datetime | None = None

    digest_date: str = ""
    related_ids: list[str] = field(default_factory=list)

    body_hydrated: bool = False

    @property
    def is_digest(self) -> bool:
        return self.kind == ItemKind.DIGEST

    @property
    def effective_date(self) -> datetime | None:
        """Published date, falling back to the last time a fetch touched the item."""
        return as_aware(self.published_date or self.saved_at)

    def copy(self) -> HistoryItem:
        return replace(self, ai_tags=list(self.ai_tags), related_ids=list(self.related_ids))

    def to_dict(self, include_body: bool = True) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "published": self.published_text,
            "date": _iso(self.published_date),
            "feed_title": self.origin_feed_title,
            "feed_url": self.origin_feed_url,
            "is_read": self.is_read,
            "is_bookmarked": self.is_bookmarked,
            "saved_at": _iso(self.saved_at),
            "ai_summary": self.ai_summary,
            "ai_tags": list(self.ai_tags),
            "ai_updated_at": _iso(self.ai_updated_at),
            "digest_date": self.digest_date,
            "related_ids": list(self.related_ids),
            "body_hydrated": self.body_hydrated,
        }
        if include_body:
            data["content"] = self.body
        return data


def derive_item_id(item: SourceItem) -> str:
    """Canonical identity: guid, then link, then title. Empty means unusable."""
    for candidate in (item.guid, item.link, item.title):
        candidate = (candidate or "").strip()
        if candidate:
            return candidate
    return ""


def normalize_tags(tags: Iterable[Any] | None) -> list[str]:
    """Strip tags and drop blanks and case-insensitive duplicates, keeping order."""
    if not tags:
        return []
    seen: set[str] = set()
    normalized: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        t = tag.strip()
        if not t:
            continue
        key = t.lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(t)
    return normalized


def as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def sort_by_recency(items: list[HistoryItem]) -> list[HistoryItem]:
    """Newest first by effective date; undated items go last."""
    return sorted(items, key=lambda i: i.effective_date or _EPOCH, reverse=True)


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else ""
