from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from fastapi import Body, FastAPI, HTTPException

from newsdeck.core.capabilities import Capabilities, build_capabilities
from newsdeck.core.clock import Clock
from newsdeck.core.errors import DigestError, FeedFetchError, GroupingError, InsightError, StorageError
from newsdeck.core.fetch_coordinator import ConcurrentFetchCoordinator, FeedFetchOptions
from newsdeck.core.history import History
from newsdeck.core.insight import InsightRequest
from newsdeck.core.llm_providers import LLMError
from newsdeck.core.models import ALL_FEEDS_URL, BOOKMARKS_URL, NEWS_URL
from newsdeck.core.reading import ReadingService
from newsdeck.core.settings import Settings
from newsdeck.core.storage import init_db
from newsdeck.providers.feeds import HttpFeedSource

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    settings: Settings
    history: History
    reading: ReadingService
    capabilities: Capabilities
    feed_source: HttpFeedSource | None = None


_state: AppState | None = None


def init_app_state(settings: Settings | None = None) -> AppState:
    global _state
    s = settings or Settings.from_env()
    store = init_db(s)
    clock = Clock.from_name(s.timezone)
    source = HttpFeedSource(timeout=s.per_feed_timeout)
    reading = ReadingService(
        ConcurrentFetchCoordinator(source, clock),
        store,
        clock,
        FeedFetchOptions(per_source_timeout=s.per_feed_timeout, batch_timeout=s.batch_timeout),
    )
    history = reading.load_history_metadata()
    logger.info(f"Loaded {len(history)} history items from {s.db_path}")
    _state = AppState(
        settings=s,
        history=history,
        reading=reading,
        capabilities=build_capabilities(s, reading),
        feed_source=source,
    )
    return _state


def set_app_state(state: AppState | None) -> None:
    global _state
    _state = state


def get_state() -> AppState:
    assert _state is not None, "App state not initialized"
    return _state


app = FastAPI(title="newsdeck")


@app.on_event("startup")
def _startup() -> None:
    init_app_state()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _state is not None and _state.feed_source is not None:
        await _state.feed_source.close()


def _ai_failure(e: Exception) -> HTTPException:
    if isinstance(e, asyncio.TimeoutError):
        return HTTPException(status_code=504, detail="AI backend timed out")
    if isinstance(e, LLMError):
        return HTTPException(status_code=502, detail=f"AI backend failed: {e}")
    return HTTPException(status_code=422, detail=str(e))


@app.get("/api/feeds")
def api_feeds():
    """Configured feeds plus the virtual views."""
    state = get_state()
    return {
        "feeds": list(state.settings.feeds),
        "virtual": [ALL_FEEDS_URL, NEWS_URL, BOOKMARKS_URL],
        "ai_enabled": state.capabilities.ai_enabled,
    }


@app.post("/api/feeds/refresh")
async def api_feeds_refresh(url: str = ALL_FEEDS_URL):
    """Fetch a feed (default: all configured feeds) and merge it into history."""
    state = get_state()
    try:
        feed, report = await state.reading.fetch_feed(url, state.settings.feeds)
    except FeedFetchError as e:
        raise HTTPException(status_code=502, detail=f"Feed fetch failed: {e}")
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail=f"Feed {url} timed out")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    changed, result = state.reading.merge_history(state.history, feed)
    return {
        "feed": feed.url,
        "title": feed.title,
        "report": report.to_dict(),
        "status_message": report.status_message(),
        "item_count": len(feed.items),
        "changed": len(changed),
        "write_error": result.error,
    }


@app.get("/api/items")
def api_items(feed: str = ALL_FEEDS_URL):
    """Metadata snapshots for a feed or virtual view, newest first."""
    state = get_state()
    items = state.history.items_by_feed(feed)
    return {"feed": feed, "items": [i.to_dict(include_body=False) for i in items]}


@app.post("/api/items/{item_id:path}/read")
def api_item_read(item_id: str):
    state = get_state()
    found, result = state.reading.mark_read(state.history, item_id)
    if not found:
        raise HTTPException(status_code=404, detail="Item not found")
    return {"id": item_id, "is_read": True, "write_error": result.error}


@app.post("/api/items/{item_id:path}/bookmark")
def api_item_bookmark(item_id: str):
    state = get_state()
    bookmarked, result = state.reading.toggle_bookmark(state.history, item_id)
    if bookmarked is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return {"id": item_id, "is_bookmarked": bookmarked, "write_error": result.error}


@app.post("/api/items/{item_id:path}/insight")
async def api_item_insight(item_id: str):
    """Generate and store an AI summary with tags for one article."""
    state = get_state()
    service = state.capabilities.insight
    if service is None:
        raise HTTPException(status_code=503, detail="AI integration is disabled")

    try:
        item = state.reading.hydrate_item(state.history, item_id)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")

    try:
        insight = await service.generate(InsightRequest.from_item(item))
    except (InsightError, LLMError, asyncio.TimeoutError) as e:
        raise _ai_failure(e)

    updated_at, result = state.reading.apply_insight(state.history, item_id, insight.summary, insight.tags)
    return {
        "id": item_id,
        "ai_summary": insight.summary,
        "ai_tags": insight.tags,
        "ai_updated_at": updated_at.isoformat() if updated_at else "",
        "write_error": result.error,
    }


@app.get("/api/items/{item_id:path}")
def api_item(item_id: str):
    """One fully loaded item; digests include the articles they reference."""
    state = get_state()
    try:
        item = state.reading.hydrate_item(state.history, item_id)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")

    data = item.to_dict()
    if item.is_digest:
        data["related"] = [r.to_dict(include_body=False) for r in state.history.related_items(item_id)]
    return data


@app.get("/api/digest/today")
async def api_digest_today(force: bool = False):
    """Today's news digest, generated on a cache miss or when forced."""
    state = get_state()
    service = state.capabilities.news_digest
    try:
        digest = await service.build_daily(state.history, state.settings.feeds, force=force)
    except DigestError as e:
        if not service.enabled:
            raise HTTPException(status_code=503, detail="AI integration is disabled")
        raise HTTPException(status_code=422, detail=str(e))
    except (LLMError, asyncio.TimeoutError) as e:
        raise _ai_failure(e)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return digest.to_dict()


@app.post("/api/feeds/group")
async def api_feeds_group(feeds: list[str] | None = Body(default=None, embed=True)):
    """Suggest feed groups (default: the configured feeds)."""
    state = get_state()
    service = state.capabilities.feed_grouping
    if service is None:
        raise HTTPException(status_code=503, detail="AI integration is disabled")
    try:
        result = await service.group(feeds if feeds is not None else state.settings.feeds)
    except (GroupingError, LLMError, asyncio.TimeoutError) as e:
        raise _ai_failure(e)
    return result.to_dict()
