"""Per-article AI insight: a short summary plus topic tags."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from newsdeck.core.errors import InsightError
from newsdeck.core.llm_providers import TextGenerator
from newsdeck.core.models import HistoryItem, normalize_tags
from newsdeck.core.prompts import (
    generation_options,
    limit_text,
    parse_json_output,
    render_prompt,
    string_list,
    text_field,
)

logger = logging.getLogger(__name__)

MAX_INSIGHT_DESCRIPTION_CHARS = 2000
MAX_INSIGHT_CONTENT_CHARS = 12000


@dataclass(frozen=True)
class InsightRequest:
    title: str = ""
    description: str = ""
    content: str = ""
    link: str = ""
    published: str = ""
    feed_title: str = ""

    @classmethod
    def from_item(cls, item: HistoryItem) -> InsightRequest:
        return cls(
            title=item.title,
            description=item.description,
            content=item.body,
            link=item.link,
            published=item.published_text,
            feed_title=item.origin_feed_title,
        )

    @property
    def is_blank(self) -> bool:
        return not (self.title.strip() or self.description.strip() or self.content.strip())


@dataclass
class Insight:
    summary: str
    tags: list[str] = field(default_factory=list)


class InsightGenerator(Protocol):
    async def generate(self, request: InsightRequest) -> Insight:
        ...


def build_insight_prompt(request: InsightRequest) -> str:
    payload = {
        "title": request.title.strip(),
        "description": limit_text(request.description.strip(), MAX_INSIGHT_DESCRIPTION_CHARS),
        "content": limit_text(request.content.strip(), MAX_INSIGHT_CONTENT_CHARS),
        "url": request.link.strip(),
        "published": request.published.strip(),
        "feed_title": request.feed_title.strip(),
    }
    return render_prompt("insight", payload)


def parse_insight_output(raw: str) -> Insight:
    data = parse_json_output(raw)
    return Insight(summary=text_field(data, "summary"), tags=string_list(data, "tags"))


class PromptInsightGenerator:
    """InsightGenerator backed by any TextGenerator."""

    def __init__(self, client: TextGenerator) -> None:
        self._client = client

    async def generate(self, request: InsightRequest) -> Insight:
        raw = await self._client.generate(
            build_insight_prompt(request), **generation_options("insight")
        )
        return parse_insight_output(raw)


class InsightService:
    def __init__(self, generator: InsightGenerator, timeout: float = 0) -> None:
        self._generator = generator
        self._timeout = timeout

    async def generate(self, request: InsightRequest) -> Insight:
        """Generate an insight and normalize it.

        Raises:
            InsightError: If the article is blank, the output is unreadable,
                or the summary comes back empty.
        """
        if request.is_blank:
            raise InsightError("article has no content to summarize")

        call = self._generator.generate(request)
        try:
            if self._timeout > 0:
                insight = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                insight = await call
        except ValueError as e:
            raise InsightError(str(e)) from e

        summary = insight.summary.strip()
        if not summary:
            raise InsightError("empty summary returned by the ai backend")
        logger.debug(f"Generated insight for {request.link or request.title!r}")
        return Insight(summary=summary, tags=normalize_tags(insight.tags))
