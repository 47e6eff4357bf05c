"""Tests for storage.py"""

import json
import os
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from newsdeck.core.errors import StorageError
from newsdeck.core.models import HistoryItem, ItemKind
from newsdeck.core.settings import Settings, normalize_history_path
from newsdeck.core.storage import HistoryStore, init_db, parse_ts

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """In-memory history store with schema."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    s = HistoryStore(conn=conn)
    s.init()
    return s


def _article(item_id, **kwargs) -> HistoryItem:
    defaults = dict(
        id=item_id,
        title=f"Title {item_id}",
        description="desc",
        body=f"Long body of {item_id}",
        link=f"https://example.com/{item_id}",
        published_date=NOW,
        origin_feed_url="https://example.com/feed",
        origin_feed_title="Example",
        saved_at=NOW,
        body_hydrated=True,
    )
    defaults.update(kwargs)
    return HistoryItem(**defaults)


def _settings(tmp_path, db_path) -> Settings:
    return Settings(
        app_env="test",
        db_path=normalize_history_path(db_path),
        legacy_history_path=os.path.join(os.path.dirname(db_path), "history.jsonl"),
        feeds=(),
        timezone="UTC",
        per_feed_timeout=8.0,
        batch_timeout=12.0,
        ai_provider="none",
        ai_model="",
        ai_timeout_seconds=30,
        codex_command="codex",
        codex_sandbox="read-only",
        codex_reasoning_effort="",
        codex_web_search="",
        digest_max_articles=60,
    )


class TestTieredReads:
    def test_metadata_omits_article_bodies(self, store):
        store.upsert([_article("a")])

        meta = store.load_metadata()["a"]

        assert meta.body == ""
        assert meta.body_hydrated is False
        assert meta.title == "Title a"

    def test_metadata_keeps_digest_bodies(self, store):
        store.replace_digest_items_by_date("2026-03-10", [_article("d1", body="Digest summary")])

        meta = store.load_metadata()["d1"]

        assert meta.kind == ItemKind.DIGEST
        assert meta.body == "Digest summary"
        assert meta.body_hydrated is True

    def test_load_by_id_hydrates(self, store):
        store.upsert([_article("a")])

        item = store.load_by_id("a")

        assert item.body == "Long body of a"
        assert item.body_hydrated is True

    def test_load_by_id_missing(self, store):
        assert store.load_by_id("missing") is None
        assert store.load_by_id("  ") is None

    def test_round_trips_user_state(self, store):
        store.upsert([_article("a", is_read=True, is_bookmarked=True, ai_tags=["x", "X", "y"], related_ids=["r"])])

        item = store.load_by_id("a")

        assert item.is_read and item.is_bookmarked
        assert item.ai_tags == ["x", "y"]
        assert item.related_ids == ["r"]
        assert item.published_date == NOW


class TestWrites:
    def test_upsert_replaces_by_id(self, store):
        store.upsert([_article("a", title="Old")])
        store.upsert([_article("a", title="New")])

        assert store.count() == 1
        assert store.load_by_id("a").title == "New"

    def test_setters(self, store):
        store.upsert([_article("a")])

        assert store.set_read("a", True) is True
        assert store.set_bookmark("a", True) is True
        assert store.set_insight("a", "Summary", ["t1", "T1", "t2"], NOW) is True

        item = store.load_by_id("a")
        assert item.is_read is True
        assert item.is_bookmarked is True
        assert item.ai_summary == "Summary"
        assert item.ai_tags == ["t1", "t2"]
        assert item.ai_updated_at == NOW

    def test_setters_on_unknown_id_are_noops(self, store):
        assert store.set_read("missing", True) is False
        assert store.set_bookmark("missing", True) is False
        assert store.count() == 0

    def test_sqlite_errors_are_wrapped(self, store):
        store.conn.execute("DROP TABLE history_items")
        with pytest.raises(StorageError):
            store.upsert([_article("a")])
        with pytest.raises(StorageError):
            store.load_metadata()


class TestDigestRows:
    def test_replace_forces_kind_and_date(self, store):
        store.replace_digest_items_by_date("2026-03-10", [_article("d1")])

        item = store.load_by_id("d1")
        assert item.kind == ItemKind.DIGEST
        assert item.digest_date == "2026-03-10"

    def test_upsert_keeps_stale_slots(self, store):
        store.replace_digest_items_by_date("2026-03-10", [_article("s1"), _article("s2")])
        store.replace_digest_items_by_date("2026-03-10", [_article("s1", title="Again")])

        ids = [i.id for i in store.digest_items_by_date("2026-03-10")]
        assert sorted(ids) == ["s1", "s2"]

    def test_prune_removes_stale_slots_of_same_date_only(self, store):
        store.replace_digest_items_by_date("2026-03-09", [_article("y1")])
        store.replace_digest_items_by_date("2026-03-10", [_article("s1"), _article("s2")])

        store.replace_digest_items_by_date("2026-03-10", [_article("s1")], prune=True)

        assert [i.id for i in store.digest_items_by_date("2026-03-10")] == ["s1"]
        assert [i.id for i in store.digest_items_by_date("2026-03-09")] == ["y1"]

    def test_digest_items_in_topic_order(self, store):
        store.replace_digest_items_by_date(
            "2026-03-10",
            [
                _article("slot2", published_date=NOW + timedelta(seconds=1)),
                _article("slot1", published_date=NOW),
            ],
        )
        assert [i.id for i in store.digest_items_by_date("2026-03-10")] == ["slot1", "slot2"]

    def test_blank_date_is_ignored(self, store):
        assert store.replace_digest_items_by_date(" ", [_article("d1")]) == 0
        assert store.count() == 0


class TestTodayArticles:
    def test_windows_by_effective_date(self, store):
        tz = timezone(timedelta(hours=9))
        day = datetime(2026, 3, 10, tzinfo=tz)
        store.upsert(
            [
                _article("yesterday", published_date=day - timedelta(seconds=1)),
                _article("early", published_date=day + timedelta(hours=1)),
                _article("late", published_date=day + timedelta(hours=22)),
                _article("tomorrow", published_date=day + timedelta(days=1)),
                _article("saved-only", published_date=None, saved_at=day + timedelta(hours=5)),
            ]
        )
        store.replace_digest_items_by_date("2026-03-10", [_article("digest", published_date=day)])

        items = store.load_today_articles("2026-03-10", None, 0, tz)

        assert [i.id for i in items] == ["late", "saved-only", "early"]
        assert all(i.body_hydrated and i.body for i in items)

    def test_feed_allow_list_and_limit(self, store):
        store.upsert(
            [
                _article("a", published_date=NOW),
                _article("b", published_date=NOW - timedelta(hours=1)),
                _article("c", published_date=NOW, origin_feed_url="https://other/feed"),
            ]
        )

        items = store.load_today_articles("2026-03-10", ["https://example.com/feed"], 1, timezone.utc)

        assert [i.id for i in items] == ["a"]

    def test_legacy_empty_kind_counts_as_article(self, store):
        store.upsert([_article("a")])
        store.conn.execute("UPDATE history_items SET kind = ''")
        store.conn.commit()

        items = store.load_today_articles("2026-03-10", None, 0, timezone.utc)

        assert [i.id for i in items] == ["a"]
        assert items[0].kind == ItemKind.ARTICLE


class TestMigrations:
    def test_adds_missing_columns(self):
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.execute(
            """
            CREATE TABLE history_items (
              id TEXT PRIMARY KEY,
              title TEXT NOT NULL DEFAULT '',
              description TEXT NOT NULL DEFAULT '',
              content TEXT NOT NULL DEFAULT '',
              link TEXT NOT NULL DEFAULT '',
              published TEXT NOT NULL DEFAULT '',
              date TEXT NOT NULL DEFAULT '',
              feed_title TEXT NOT NULL DEFAULT '',
              feed_url TEXT NOT NULL DEFAULT '',
              is_read INTEGER NOT NULL DEFAULT 0,
              saved_at TEXT NOT NULL DEFAULT ''
            )
            """
        )
        conn.execute("INSERT INTO history_items (id, title, content) VALUES ('old', 'Old row', 'text')")
        conn.commit()

        s = HistoryStore(conn=conn)
        s.init()

        columns = {row[1] for row in conn.execute("PRAGMA table_info(history_items)")}
        assert {"kind", "is_bookmarked", "ai_tags", "digest_date", "related_guids"} <= columns
        item = s.load_by_id("old")
        assert item.kind == ItemKind.ARTICLE
        assert item.ai_tags == []
        assert item.is_bookmarked is False


class TestLegacyImport:
    def test_imports_jsonl_and_renames_it(self, tmp_path):
        legacy = tmp_path / "history.jsonl"
        records = [
            {
                "guid": "a",
                "title": "A",
                "content": "Body",
                "date": "2026-03-10T08:00:00.123456789Z",
                "saved_at": "0001-01-01T00:00:00Z",
                "is_read": True,
                "ai_tags": ["x"],
            },
            {"guid": "d", "kind": "news_digest", "digest_date": "2026-03-10", "related_guids": ["a"]},
        ]
        lines = [json.dumps(r) for r in records] + ["{not json", json.dumps({"title": "no guid"})]
        legacy.write_text("\n".join(lines) + "\n", encoding="utf-8")

        s = init_db(_settings(tmp_path, str(tmp_path / "history.db")))

        assert s.count() == 2
        a = s.load_by_id("a")
        assert a.is_read is True
        assert a.body == "Body"
        assert a.published_date == datetime(2026, 3, 10, 8, 0, 0, 123456, tzinfo=timezone.utc)
        assert a.saved_at is None
        assert s.load_by_id("d").related_ids == ["a"]
        assert not legacy.exists()
        assert (tmp_path / "history.jsonl.migrated").exists()

    def test_existing_rows_win(self, tmp_path, store):
        legacy = tmp_path / "history.jsonl"
        legacy.write_text(json.dumps({"guid": "a", "title": "Legacy"}) + "\n", encoding="utf-8")
        store.upsert([_article("a", title="Current")])

        store.import_legacy_jsonl(str(legacy))

        assert store.load_by_id("a").title == "Current"

    def test_jsonl_path_maps_to_db(self):
        assert normalize_history_path("/data/newsdeck/history.jsonl") == "/data/newsdeck/history.db"
        assert normalize_history_path("/data/custom.db") == "/data/custom.db"


class TestParseTimestamp:
    def test_values(self):
        assert parse_ts("") is None
        assert parse_ts("garbage") is None
        assert parse_ts("0001-01-01T00:00:00Z") is None
        assert parse_ts("2026-03-10T12:00:00") == NOW
        assert parse_ts("2026-03-10T21:00:00+09:00") == NOW


class TestMetadataWriteBack:
    def test_upsert_without_body_keeps_stored_body(self, store):
        store.upsert([_article("a")])
        meta = store.load_metadata()["a"]
        meta.title = "Retitled"

        store.upsert([meta])

        item = store.load_by_id("a")
        assert item.title == "Retitled"
        assert item.body == "Long body of a"
