"""Daily news digest: reuse today's cached topics or generate them.

Generated topics become digest-kind history items with ids stable per
(date, slot), so regenerating a day overwrites the same rows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any, Iterable, Protocol

from newsdeck.core.clock import start_of_day
from newsdeck.core.errors import DigestError
from newsdeck.core.history import History
from newsdeck.core.llm_providers import TextGenerator
from newsdeck.core.models import NEWS_URL, HistoryItem, ItemKind, normalize_tags
from newsdeck.core.prompts import (
    generation_options,
    limit_text,
    object_list,
    parse_json_output,
    render_prompt,
    string_list,
    text_field,
)
from newsdeck.core.reading import ReadingService

logger = logging.getLogger(__name__)

MAX_NEWS_DIGEST_ARTICLES = 60
MAX_NEWS_DIGEST_DESCRIPTION_CHARS = 1200
MAX_NEWS_DIGEST_CONTENT_CHARS = 4000

DIGEST_FEED_TITLE = "Daily News"


@dataclass(frozen=True)
class NewsDigestArticle:
    guid: str
    title: str = ""
    feed_title: str = ""
    published: str = ""
    link: str = ""
    description: str = ""
    content: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "guid": self.guid,
            "title": self.title,
            "feed_title": self.feed_title,
            "published": self.published,
            "link": self.link,
            "description": self.description,
            "content": self.content,
        }


@dataclass(frozen=True)
class NewsDigestRequest:
    date_key: str
    articles: list[NewsDigestArticle]

    def to_dict(self) -> dict[str, Any]:
        return {"date_key": self.date_key, "articles": [a.to_dict() for a in self.articles]}


@dataclass
class NewsDigestTopic:
    title: str
    summary: str
    tags: list[str] = field(default_factory=list)
    article_ids: list[str] = field(default_factory=list)


@dataclass
class DailyNewsDigest:
    date_key: str
    items: list[HistoryItem]
    used_cache: bool
    # Set when the generated digest could not be persisted
    write_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_key": self.date_key,
            "used_cache": self.used_cache,
            "write_error": self.write_error,
            "items": [i.to_dict() for i in self.items],
        }


class NewsDigestGenerator(Protocol):
    async def generate(self, request: NewsDigestRequest) -> list[NewsDigestTopic]:
        ...


def build_digest_request(date_key: str, articles: Iterable[HistoryItem]) -> NewsDigestRequest:
    entries = []
    for article in articles:
        if not article.id.strip():
            continue
        entries.append(
            NewsDigestArticle(
                guid=article.id,
                title=article.title.strip(),
                feed_title=article.origin_feed_title.strip(),
                published=article.published_text.strip(),
                link=article.link.strip(),
                description=limit_text(article.description.strip(), MAX_NEWS_DIGEST_DESCRIPTION_CHARS),
                content=limit_text(article.body.strip(), MAX_NEWS_DIGEST_CONTENT_CHARS),
            )
        )
    return NewsDigestRequest(date_key=date_key, articles=entries)


def normalize_topics(topics: Iterable[NewsDigestTopic], request: NewsDigestRequest) -> list[NewsDigestTopic]:
    """Drop unusable topics and article references the request never offered."""
    valid_ids = {a.guid for a in request.articles if a.guid.strip()}
    normalized = []
    for topic in topics:
        title = topic.title.strip()
        summary = topic.summary.strip()
        if not title or not summary:
            continue

        ids: list[str] = []
        for article_id in topic.article_ids:
            article_id = article_id.strip()
            if article_id and article_id in valid_ids and article_id not in ids:
                ids.append(article_id)
        if not ids:
            continue

        normalized.append(
            NewsDigestTopic(title=title, summary=summary, tags=normalize_tags(topic.tags), article_ids=ids)
        )
    return normalized


def digest_item_id(date_key: str, slot: int) -> str:
    return f"{ItemKind.DIGEST.value}:{date_key}:{slot}"


def build_digest_items(
    date_key: str,
    topics: list[NewsDigestTopic],
    saved_at: datetime,
    tz: tzinfo,
) -> list[HistoryItem]:
    try:
        day = start_of_day(date_key, tz)
    except ValueError:
        day = saved_at.astimezone(tz)

    items = []
    for index, topic in enumerate(topics):
        items.append(
            HistoryItem(
                id=digest_item_id(date_key, index + 1),
                kind=ItemKind.DIGEST,
                title=topic.title,
                description=topic.summary,
                body=topic.summary,
                published_text=date_key,
                # Offsets keep topic order under date sorting
                published_date=day + timedelta(seconds=index),
                origin_feed_title=DIGEST_FEED_TITLE,
                origin_feed_url=NEWS_URL,
                saved_at=saved_at,
                digest_date=date_key,
                ai_tags=list(topic.tags),
                related_ids=list(topic.article_ids),
                body_hydrated=True,
            )
        )
    return items


def build_digest_prompt(request: NewsDigestRequest) -> str:
    payload = NewsDigestRequest(
        date_key=request.date_key.strip(),
        articles=[
            NewsDigestArticle(
                guid=a.guid.strip(),
                title=a.title.strip(),
                feed_title=a.feed_title.strip(),
                published=a.published.strip(),
                link=a.link.strip(),
                description=limit_text(a.description.strip(), MAX_NEWS_DIGEST_DESCRIPTION_CHARS),
                content=limit_text(a.content.strip(), MAX_NEWS_DIGEST_CONTENT_CHARS),
            )
            for a in request.articles
        ],
    )
    return render_prompt("news_digest", payload.to_dict())


def parse_digest_output(raw: str) -> list[NewsDigestTopic]:
    data = parse_json_output(raw)
    return [
        NewsDigestTopic(
            title=text_field(t, "title"),
            summary=text_field(t, "summary"),
            tags=string_list(t, "tags"),
            article_ids=string_list(t, "article_guids", "article_ids"),
        )
        for t in object_list(data, "topics")
    ]


class PromptNewsDigestGenerator:
    def __init__(self, client: TextGenerator) -> None:
        self._client = client

    async def generate(self, request: NewsDigestRequest) -> list[NewsDigestTopic]:
        raw = await self._client.generate(
            build_digest_prompt(request), **generation_options("news_digest")
        )
        return parse_digest_output(raw)


class NewsDigestService:
    """Builds today's digest, reusing cached topics unless forced.

    Builds for the same date are serialized, so a second caller waiting on
    an in-flight generation sees its result as cache.
    """

    def __init__(
        self,
        generator: NewsDigestGenerator | None,
        reading: ReadingService,
        timeout: float = 0,
        max_articles: int = MAX_NEWS_DIGEST_ARTICLES,
    ) -> None:
        self._generator = generator
        self._reading = reading
        self._timeout = timeout
        self._max_articles = max_articles if max_articles > 0 else MAX_NEWS_DIGEST_ARTICLES
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def enabled(self) -> bool:
        return self._generator is not None

    def today_date_key(self) -> str:
        return self._reading.clock.today_key()

    async def build_daily(
        self,
        history: History,
        feeds: Iterable[str] | None = None,
        force: bool = False,
    ) -> DailyNewsDigest:
        date_key = self.today_date_key()
        # Only today is ever built, so locks of past dates are dead
        for stale in [k for k in self._locks if k != date_key]:
            del self._locks[stale]
        lock = self._locks.setdefault(date_key, asyncio.Lock())
        async with lock:
            return await self._build(history, date_key, list(feeds or []), force)

    async def _build(self, history: History, date_key: str, feeds: list[str], force: bool) -> DailyNewsDigest:
        if not force:
            cached = self._reading.digest_items_by_date(history, date_key)
            if cached:
                logger.debug(f"Using {len(cached)} cached digest items for {date_key}")
                return DailyNewsDigest(date_key=date_key, items=cached, used_cache=True)

        if self._generator is None:
            raise DigestError("ai integration is disabled")

        articles = self._reading.load_today_articles(history, date_key, feeds, self._max_articles)
        if not articles:
            raise DigestError("no articles available for today's news")

        request = build_digest_request(date_key, articles[: self._max_articles])
        call = self._generator.generate(request)
        try:
            if self._timeout > 0:
                topics = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                topics = await call
        except ValueError as e:
            raise DigestError(str(e)) from e

        normalized = normalize_topics(topics, request)
        if not normalized:
            raise DigestError("daily news generation returned no valid topics")

        items = build_digest_items(date_key, normalized, self._reading.clock.now(), self._reading.clock.tz)
        stored, result = self._reading.replace_digest_items_by_date(history, date_key, items, prune=True)
        logger.info(
            f"Generated {len(stored)} digest topics for {date_key} from {len(request.articles)} articles"
        )
        return DailyNewsDigest(date_key=date_key, items=stored, used_cache=False, write_error=result.error)
