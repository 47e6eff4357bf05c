"""AI-suggested grouping of subscribed feeds."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol
from urllib.parse import urlparse

from newsdeck.core.errors import GroupingError
from newsdeck.core.llm_providers import TextGenerator
from newsdeck.core.prompts import (
    generation_options,
    object_list,
    parse_json_output,
    render_prompt,
    string_list,
    text_field,
)

logger = logging.getLogger(__name__)

MAX_FEED_GROUPING_FEEDS = 200


@dataclass(frozen=True)
class FeedGroupingFeed:
    url: str
    host: str = ""
    path: str = ""


@dataclass(frozen=True)
class FeedGroupingRequest:
    feeds: list[FeedGroupingFeed]


@dataclass
class FeedGroup:
    name: str
    feeds: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "feeds": list(self.feeds)}


@dataclass
class FeedGroupingResult:
    groups: list[FeedGroup]
    ungrouped: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "groups": [g.to_dict() for g in self.groups],
            "ungrouped": list(self.ungrouped),
        }


class FeedGroupingGenerator(Protocol):
    async def generate(self, request: FeedGroupingRequest) -> list[FeedGroup]:
        ...


def normalize_feed_urls(feeds: Iterable[str]) -> list[str]:
    """Strip and de-duplicate feed URLs, keeping at most MAX_FEED_GROUPING_FEEDS."""
    normalized: list[str] = []
    seen: set[str] = set()
    for feed_url in feeds or []:
        trimmed = (feed_url or "").strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        normalized.append(trimmed)
        if len(normalized) >= MAX_FEED_GROUPING_FEEDS:
            break
    return normalized


def build_grouping_request(feeds: list[str]) -> FeedGroupingRequest:
    entries = []
    for feed_url in feeds:
        parsed = urlparse(feed_url)
        entries.append(
            FeedGroupingFeed(
                url=feed_url,
                host=(parsed.hostname or "").strip(),
                path=parsed.path.strip().strip("/"),
            )
        )
    return FeedGroupingRequest(feeds=entries)


def normalize_suggested_groups(groups: list[FeedGroup], feeds: list[str]) -> list[FeedGroup]:
    """Keep only usable suggestions.

    Unknown feeds are dropped, a feed stays in the first group that claims
    it, and groups whose names differ only by case are merged.
    """
    valid = set(feeds)
    assigned: set[str] = set()
    result: list[FeedGroup] = []
    index_by_name: dict[str, int] = {}

    for group in groups:
        name = group.name.strip()
        if not name:
            continue

        selected: list[str] = []
        for feed_url in group.feeds:
            feed_url = feed_url.strip()
            if not feed_url or feed_url not in valid:
                continue
            if feed_url in assigned or feed_url in selected:
                continue
            selected.append(feed_url)
        if not selected:
            continue

        key = name.lower()
        if key in index_by_name:
            result[index_by_name[key]].feeds.extend(selected)
        else:
            index_by_name[key] = len(result)
            result.append(FeedGroup(name=name, feeds=selected))
        assigned.update(selected)

    return result


def build_grouping_prompt(request: FeedGroupingRequest) -> str:
    payload = {
        "feeds": [
            {"url": f.url.strip(), "host": f.host.strip(), "path": f.path.strip()}
            for f in request.feeds
        ]
    }
    return render_prompt("feed_grouping", payload)


def parse_grouping_output(raw: str) -> list[FeedGroup]:
    data = parse_json_output(raw)
    return [
        FeedGroup(name=text_field(g, "name"), feeds=string_list(g, "feeds"))
        for g in object_list(data, "groups")
    ]


class PromptFeedGroupingGenerator:
    def __init__(self, client: TextGenerator) -> None:
        self._client = client

    async def generate(self, request: FeedGroupingRequest) -> list[FeedGroup]:
        raw = await self._client.generate(
            build_grouping_prompt(request), **generation_options("feed_grouping")
        )
        return parse_grouping_output(raw)


class FeedGroupingService:
    def __init__(self, generator: FeedGroupingGenerator, timeout: float = 0) -> None:
        self._generator = generator
        self._timeout = timeout

    async def group(self, feeds: Iterable[str]) -> FeedGroupingResult:
        """Suggest groups for ``feeds``; unassigned feeds come back as ungrouped.

        Raises:
            GroupingError: If fewer than two feeds are given or no usable
                group comes back.
        """
        normalized = normalize_feed_urls(feeds)
        if len(normalized) < 2:
            raise GroupingError("at least 2 feeds are required for grouping")

        call = self._generator.generate(build_grouping_request(normalized))
        try:
            if self._timeout > 0:
                suggested = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                suggested = await call
        except ValueError as e:
            raise GroupingError(str(e)) from e

        groups = normalize_suggested_groups(suggested, normalized)
        if not groups:
            raise GroupingError("feed grouping returned no valid groups")

        assigned = {f for g in groups for f in g.feeds}
        ungrouped = [f for f in normalized if f not in assigned]
        logger.info(f"Grouped {len(assigned)} feeds into {len(groups)} groups")
        return FeedGroupingResult(groups=groups, ungrouped=ungrouped)
