"""Optional AI features, decided once at startup."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from newsdeck.core.feed_grouping import FeedGroupingService, PromptFeedGroupingGenerator
from newsdeck.core.insight import InsightService, PromptInsightGenerator
from newsdeck.core.llm_providers import TextGenerator, get_text_generator
from newsdeck.core.news_digest import NewsDigestService, PromptNewsDigestGenerator
from newsdeck.core.reading import ReadingService
from newsdeck.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Capabilities:
    """AI services; a None field means the feature is unavailable.

    The digest service is always present so cached digests stay readable
    with AI turned off; it only refuses to generate.
    """

    news_digest: NewsDigestService
    insight: InsightService | None = None
    feed_grouping: FeedGroupingService | None = None

    @property
    def ai_enabled(self) -> bool:
        return self.news_digest.enabled


def build_capabilities(
    settings: Settings,
    reading: ReadingService,
    generator: TextGenerator | None = None,
) -> Capabilities:
    """Wire the AI services for ``settings``; ``generator`` overrides the configured backend."""
    client = generator if generator is not None else get_text_generator(settings)
    timeout = float(settings.ai_timeout_seconds)

    if client is None:
        logger.info("AI features disabled")
        return Capabilities(
            news_digest=NewsDigestService(None, reading, max_articles=settings.digest_max_articles),
        )

    logger.info(f"AI features enabled via {client.name}")
    return Capabilities(
        news_digest=NewsDigestService(
            PromptNewsDigestGenerator(client),
            reading,
            timeout=timeout,
            max_articles=settings.digest_max_articles,
        ),
        insight=InsightService(PromptInsightGenerator(client), timeout=timeout),
        feed_grouping=FeedGroupingService(PromptFeedGroupingGenerator(client), timeout=timeout),
    )
