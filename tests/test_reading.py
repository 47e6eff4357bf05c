"""Tests for reading.py"""

import sqlite3
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from newsdeck.core.clock import Clock
from newsdeck.core.errors import FeedFetchError, FetchErrorType, StorageError
from newsdeck.core.fetch_coordinator import FeedFetchReport
from newsdeck.core.history import History
from newsdeck.core.models import ALL_FEEDS_URL, BOOKMARKS_URL, NEWS_URL, Feed, HistoryItem, SourceItem
from newsdeck.core.reading import ReadingService
from newsdeck.core.storage import HistoryStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    s = HistoryStore(conn=conn)
    s.init()
    return s


@pytest.fixture
def coordinator():
    c = MagicMock()
    c.fetch_all = AsyncMock(return_value=(Feed(title="All Feeds", url=ALL_FEEDS_URL), FeedFetchReport(requested=2)))
    c.fetch_one = AsyncMock(return_value=Feed(title="One", url="https://one/feed"))
    return c


def _service(coordinator, store=None) -> ReadingService:
    return ReadingService(coordinator, store, Clock(tz=timezone.utc, now_fn=lambda: NOW))


def _feed() -> Feed:
    return Feed(
        title="One",
        url="https://one/feed",
        items=[SourceItem(guid="a", title="A", body="Body", origin_feed_url="https://one/feed", published_date=NOW)],
    )


class TestFetchFeed:
    @pytest.mark.asyncio
    async def test_all_feeds_fans_out(self, coordinator):
        feed, report = await _service(coordinator).fetch_feed(ALL_FEEDS_URL, ["u1", "u2"])
        coordinator.fetch_all.assert_awaited_once()
        assert coordinator.fetch_all.await_args.args[0] == ["u1", "u2"]
        assert report.requested == 2

    @pytest.mark.asyncio
    async def test_news_view_is_relabelled(self, coordinator):
        feed, _ = await _service(coordinator).fetch_feed(NEWS_URL, ["u1"])
        assert feed.url == NEWS_URL
        assert feed.title == "News"

    @pytest.mark.asyncio
    async def test_bookmarks_are_local(self, coordinator):
        feed, report = await _service(coordinator).fetch_feed(BOOKMARKS_URL, ["u1"])
        assert feed.items == []
        assert report.requested == 0
        coordinator.fetch_all.assert_not_called()
        coordinator.fetch_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_feed_error_propagates(self, coordinator):
        coordinator.fetch_one.side_effect = FeedFetchError("404", "u", FetchErrorType.HTTP_4XX)
        with pytest.raises(FeedFetchError):
            await _service(coordinator).fetch_feed("https://one/feed", [])


class TestPersistence:
    def test_merge_persists_changed_items(self, coordinator, store):
        service = _service(coordinator, store)
        history = History()

        changed, result = service.merge_history(history, _feed())

        assert [c.id for c in changed] == ["a"]
        assert result.persisted and result.ok
        assert store.load_by_id("a").body == "Body"

    def test_quiet_merge_writes_nothing(self, coordinator):
        store = MagicMock()
        service = _service(coordinator, store)
        history = History()
        service.merge_history(history, _feed())
        store.upsert.reset_mock()

        changed, result = service.merge_history(history, _feed())

        assert changed == []
        store.upsert.assert_not_called()
        assert result.ok and not result.persisted

    def test_without_store_nothing_is_persisted(self, coordinator):
        service = _service(coordinator)
        history = History()

        _, result = service.merge_history(history, _feed())

        assert result.ok
        assert result.persisted is False
        assert len(history) == 1

    def test_failed_write_keeps_memory_and_reports(self, coordinator):
        store = MagicMock()
        store.upsert.side_effect = StorageError("disk full")
        service = _service(coordinator, store)
        history = History()

        _, result = service.merge_history(history, _feed())

        assert result.ok is False
        assert "disk full" in result.error
        assert "a" in history

    def test_mark_read_and_bookmark(self, coordinator, store):
        service = _service(coordinator, store)
        history = History()
        service.merge_history(history, _feed())

        found, result = service.mark_read(history, "a")
        assert found and result.persisted
        state, _ = service.toggle_bookmark(history, "a")
        assert state is True

        item = store.load_by_id("a")
        assert item.is_read and item.is_bookmarked

    def test_unknown_ids(self, coordinator, store):
        service = _service(coordinator, store)
        history = History()
        assert service.mark_read(history, "missing")[0] is False
        assert service.toggle_bookmark(history, "missing")[0] is None
        assert service.apply_insight(history, "missing", "s", [])[0] is None

    def test_apply_insight_stamps_clock_time(self, coordinator, store):
        service = _service(coordinator, store)
        history = History()
        service.merge_history(history, _feed())

        updated_at, result = service.apply_insight(history, "a", "Summary", ["t", "T"])

        assert updated_at == NOW
        assert result.persisted
        assert history.item("a").ai_tags == ["t"]
        assert store.load_by_id("a").ai_summary == "Summary"


class TestHistoryLoading:
    def test_metadata_then_hydrate(self, coordinator, store):
        store.upsert([HistoryItem(id="a", title="A", body="Full body", body_hydrated=True)])
        service = _service(coordinator, store)

        history = service.load_history_metadata()
        assert history.item("a").body_hydrated is False

        item = service.hydrate_item(history, "a")

        assert item.body == "Full body"
        assert history.item("a").body_hydrated is True

    def test_hydrate_keeps_unsaved_user_state(self, coordinator, store):
        store.upsert([HistoryItem(id="a", title="A", body="Full body", body_hydrated=True)])
        service = _service(coordinator, store)
        history = service.load_history_metadata()
        store.conn.execute(
            "CREATE TRIGGER block_updates BEFORE UPDATE ON history_items "
            "BEGIN SELECT RAISE(ABORT, 'read only'); END;"
        )

        found, result = service.mark_read(history, "a")
        assert found and result.ok is False
        state, result = service.toggle_bookmark(history, "a")
        assert state is True and result.ok is False
        _, result = service.apply_insight(history, "a", "Summary", ["t"])
        assert result.ok is False

        item = service.hydrate_item(history, "a")

        assert item.body == "Full body"
        assert item.body_hydrated is True
        assert item.is_read is True
        assert item.is_bookmarked is True
        assert item.ai_summary == "Summary"
        assert store.load_by_id("a").is_read is False

    def test_empty_history_without_store(self, coordinator):
        assert len(_service(coordinator).load_history_metadata()) == 0
        assert _service(coordinator).load_history_item("a") is None

    def test_today_articles_fall_back_to_memory(self, coordinator):
        service = _service(coordinator)
        history = History()
        service.merge_history(history, _feed())

        items = service.load_today_articles(history, "2026-03-10", None, 10)

        assert [i.id for i in items] == ["a"]
