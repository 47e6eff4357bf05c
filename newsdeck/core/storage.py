from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Iterator

from newsdeck.core.clock import date_key_in
from newsdeck.core.errors import StorageError
from newsdeck.core.models import HistoryItem, ItemKind, normalize_tags, sort_by_recency
from newsdeck.core.settings import Settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS history_items (
  id TEXT PRIMARY KEY,
  kind TEXT NOT NULL DEFAULT 'article',
  title TEXT NOT NULL DEFAULT '',
  description TEXT NOT NULL DEFAULT '',
  content TEXT NOT NULL DEFAULT '',
  link TEXT NOT NULL DEFAULT '',
  published TEXT NOT NULL DEFAULT '',
  date TEXT NOT NULL DEFAULT '',
  feed_title TEXT NOT NULL DEFAULT '',
  feed_url TEXT NOT NULL DEFAULT '',
  is_read INTEGER NOT NULL DEFAULT 0,
  saved_at TEXT NOT NULL DEFAULT '',
  is_bookmarked INTEGER NOT NULL DEFAULT 0,
  ai_summary TEXT NOT NULL DEFAULT '',
  ai_tags TEXT NOT NULL DEFAULT '[]',
  ai_updated_at TEXT NOT NULL DEFAULT '',
  digest_date TEXT NOT NULL DEFAULT '',
  related_guids TEXT NOT NULL DEFAULT '[]'
);
"""

# Created after migrations so older tables already carry the indexed columns
INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_history_feed_kind_date
  ON history_items(feed_url, kind, date DESC);
CREATE INDEX IF NOT EXISTS idx_history_bookmark_kind_date
  ON history_items(is_bookmarked, kind, date DESC);
CREATE INDEX IF NOT EXISTS idx_history_kind_digest_date
  ON history_items(kind, digest_date);
"""

# Columns added after the first history_items schema
_MIGRATION_COLUMNS: tuple[tuple[str, str], ...] = (
    ("kind", "TEXT NOT NULL DEFAULT 'article'"),
    ("is_bookmarked", "INTEGER NOT NULL DEFAULT 0"),
    ("ai_summary", "TEXT NOT NULL DEFAULT ''"),
    ("ai_tags", "TEXT NOT NULL DEFAULT '[]'"),
    ("ai_updated_at", "TEXT NOT NULL DEFAULT ''"),
    ("digest_date", "TEXT NOT NULL DEFAULT ''"),
    ("related_guids", "TEXT NOT NULL DEFAULT '[]'"),
)

_COLUMNS = (
    "id, kind, title, description, content, link, published, date, feed_title, "
    "feed_url, is_read, saved_at, is_bookmarked, ai_summary, ai_tags, "
    "ai_updated_at, digest_date, related_guids"
)

# Article bodies are left out of metadata listings; digest bodies are short
_METADATA_COLUMNS = _COLUMNS.replace(
    "content,", f"CASE WHEN kind = '{ItemKind.DIGEST.value}' THEN content ELSE '' END AS content,"
)

_INSERT_SQL = f"""
INSERT INTO history_items ({_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_IGNORE_SQL = _INSERT_SQL.replace("INSERT INTO", "INSERT OR IGNORE INTO", 1)

_UPSERT_SQL = _INSERT_SQL + """ON CONFLICT(id) DO UPDATE SET
    kind = excluded.kind,
    title = excluded.title,
    description = excluded.description,
    -- metadata-tier rows carry no body; never blank a stored one
    content = CASE WHEN excluded.content = '' THEN history_items.content ELSE excluded.content END,
    link = excluded.link,
    published = excluded.published,
    date = excluded.date,
    feed_title = excluded.feed_title,
    feed_url = excluded.feed_url,
    is_read = excluded.is_read,
    saved_at = excluded.saved_at,
    is_bookmarked = excluded.is_bookmarked,
    ai_summary = excluded.ai_summary,
    ai_tags = excluded.ai_tags,
    ai_updated_at = excluded.ai_updated_at,
    digest_date = excluded.digest_date,
    related_guids = excluded.related_guids
"""

# Legacy rows predate the kind column or carry an empty kind
_ARTICLE_FILTER = f"(kind = '{ItemKind.ARTICLE.value}' OR kind = '' OR kind IS NULL)"

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def format_ts(value: datetime | None) -> str:
    return value.isoformat() if value else ""


def parse_ts(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; empty, zero or malformed values give None."""
    value = (value or "").strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        # Nanosecond precision from older writers
        try:
            parsed = datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value))
        except ValueError:
            return None
    if parsed.year <= 1:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump_list(values: Iterable[str]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _load_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(data, list):
        return []
    return [v for v in data if isinstance(v, str)]


def _row_to_item(row: sqlite3.Row, hydrated: bool) -> HistoryItem:
    kind = ItemKind.parse(row["kind"])
    return HistoryItem(
        id=row["id"],
        kind=kind,
        title=row["title"] or "",
        description=row["description"] or "",
        body=row["content"] or "",
        link=row["link"] or "",
        published_text=row["published"] or "",
        published_date=parse_ts(row["date"]),
        origin_feed_title=row["feed_title"] or "",
        origin_feed_url=row["feed_url"] or "",
        is_read=bool(row["is_read"]),
        saved_at=parse_ts(row["saved_at"]),
        is_bookmarked=bool(row["is_bookmarked"]),
        ai_summary=row["ai_summary"] or "",
        ai_tags=normalize_tags(_load_list(row["ai_tags"])),
        ai_updated_at=parse_ts(row["ai_updated_at"]),
        digest_date=row["digest_date"] or "",
        related_ids=_load_list(row["related_guids"]),
        body_hydrated=hydrated or kind == ItemKind.DIGEST,
    )


def _item_params(item: HistoryItem) -> tuple[Any, ...]:
    return (
        item.id,
        item.kind.value,
        item.title,
        item.description,
        item.body,
        item.link,
        item.published_text,
        format_ts(item.published_date),
        item.origin_feed_title,
        item.origin_feed_url,
        int(item.is_read),
        format_ts(item.saved_at),
        int(item.is_bookmarked),
        item.ai_summary,
        _dump_list(normalize_tags(item.ai_tags)),
        format_ts(item.ai_updated_at),
        item.digest_date,
        _dump_list(item.related_ids),
    )


def _run_migrations(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing DBs."""
    cur = conn.execute("PRAGMA table_info(history_items)")
    columns = {row[1] for row in cur.fetchall()}

    for name, ddl in _MIGRATION_COLUMNS:
        if name not in columns:
            conn.execute(f"ALTER TABLE history_items ADD COLUMN {name} {ddl}")
            logger.info(f"Added column history_items.{name}")
    conn.commit()

    conn.executescript(INDEX_SQL)
    conn.commit()


def _legacy_record_to_item(record: dict[str, Any]) -> HistoryItem | None:
    item_id = str(record.get("guid") or "").strip()
    if not item_id:
        return None

    def _s(key: str) -> str:
        value = record.get(key)
        return value if isinstance(value, str) else ""

    tags = record.get("ai_tags")
    related = record.get("related_guids")
    return HistoryItem(
        id=item_id,
        kind=ItemKind.parse(_s("kind")),
        title=_s("title"),
        description=_s("description"),
        body=_s("content"),
        link=_s("link"),
        published_text=_s("published"),
        published_date=parse_ts(_s("date")),
        origin_feed_title=_s("feed_title"),
        origin_feed_url=_s("feed_url"),
        is_read=bool(record.get("is_read")),
        saved_at=parse_ts(_s("saved_at")),
        is_bookmarked=bool(record.get("is_bookmarked")),
        ai_summary=_s("ai_summary"),
        ai_tags=normalize_tags(tags if isinstance(tags, list) else []),
        ai_updated_at=parse_ts(_s("ai_updated_at")),
        digest_date=_s("digest_date"),
        related_ids=[r for r in related if isinstance(r, str)] if isinstance(related, list) else [],
        body_hydrated=True,
    )


def read_legacy_jsonl(path: str) -> list[HistoryItem]:
    """Read a line-delimited JSON history file; malformed lines are skipped."""
    items: list[HistoryItem] = []
    skipped = 0
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(record, dict):
                skipped += 1
                continue
            item = _legacy_record_to_item(record)
            if item is None:
                skipped += 1
                continue
            items.append(item)
    if skipped:
        logger.warning(f"Skipped {skipped} malformed lines in {path}")
    return items


@dataclass
class HistoryStore:
    """SQLite-backed history with a cheap metadata tier and on-demand hydration.

    One connection is shared and serialized by a re-entrant lock. Every write
    batch runs in a single transaction so readers never see half a batch.
    """

    conn: sqlite3.Connection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        with self._lock:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.commit()
            _run_migrations(self.conn)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self.conn:
                    yield self.conn
            except sqlite3.Error as e:
                raise StorageError(f"history write failed: {e}") from e

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"history read failed: {e}") from e

    def count(self) -> int:
        rows = self._query("SELECT COUNT(*) FROM history_items")
        return rows[0][0]

    def load_metadata(self) -> dict[str, HistoryItem]:
        """All items keyed by id, article bodies omitted."""
        rows = self._query(f"SELECT {_METADATA_COLUMNS} FROM history_items")
        return {row["id"]: _row_to_item(row, hydrated=False) for row in rows}

    def load_by_id(self, item_id: str) -> HistoryItem | None:
        """One fully hydrated item, or None."""
        item_id = (item_id or "").strip()
        if not item_id:
            return None
        rows = self._query(f"SELECT {_COLUMNS} FROM history_items WHERE id = ?", (item_id,))
        if not rows:
            return None
        return _row_to_item(rows[0], hydrated=True)

    def upsert(self, items: Iterable[HistoryItem]) -> int:
        """Insert or replace items by id in one transaction. Returns the row count."""
        params = [_item_params(item) for item in items if item.id]
        if not params:
            return 0
        with self._transaction() as conn:
            conn.executemany(_UPSERT_SQL, params)
        return len(params)

    def _update_one(self, sql: str, params: tuple[Any, ...]) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def set_read(self, item_id: str, is_read: bool) -> bool:
        """Returns False (not an error) when the id is unknown."""
        return self._update_one(
            "UPDATE history_items SET is_read = ? WHERE id = ?",
            (int(is_read), item_id),
        )

    def set_bookmark(self, item_id: str, is_bookmarked: bool) -> bool:
        return self._update_one(
            "UPDATE history_items SET is_bookmarked = ? WHERE id = ?",
            (int(is_bookmarked), item_id),
        )

    def set_insight(
        self,
        item_id: str,
        summary: str,
        tags: Iterable[str],
        updated_at: datetime | None,
    ) -> bool:
        return self._update_one(
            """
            UPDATE history_items
            SET ai_summary = ?, ai_tags = ?, ai_updated_at = ?
            WHERE id = ?
            """,
            (summary, _dump_list(normalize_tags(tags)), format_ts(updated_at), item_id),
        )

    def replace_digest_items_by_date(
        self,
        date_key: str,
        items: Iterable[HistoryItem],
        prune: bool = False,
    ) -> int:
        """Upsert the digest items of one date.

        Every item is forced to the digest kind and this date. Digests of
        other dates are never touched. With ``prune`` the date's digests that
        are not in ``items`` are deleted in the same transaction; otherwise
        they are kept.
        """
        date_key = (date_key or "").strip()
        if not date_key:
            return 0
        digests = []
        for item in items:
            if not item.id:
                continue
            digest = item.copy()
            digest.kind = ItemKind.DIGEST
            digest.digest_date = date_key
            digest.body_hydrated = True
            digests.append(digest)

        with self._transaction() as conn:
            if digests:
                conn.executemany(_UPSERT_SQL, [_item_params(d) for d in digests])
            if prune:
                keep = [d.id for d in digests]
                placeholders = ", ".join("?" for _ in keep)
                sql = "DELETE FROM history_items WHERE kind = ? AND digest_date = ?"
                if keep:
                    sql += f" AND id NOT IN ({placeholders})"
                cur = conn.execute(sql, (ItemKind.DIGEST.value, date_key, *keep))
                if cur.rowcount:
                    logger.info(f"Pruned {cur.rowcount} stale digest items for {date_key}")
        return len(digests)

    def digest_items_by_date(self, date_key: str) -> list[HistoryItem]:
        """Cached digest items of one date in topic order."""
        rows = self._query(
            f"""
            SELECT {_COLUMNS} FROM history_items
            WHERE kind = ? AND digest_date = ?
            ORDER BY date ASC, id ASC
            """,
            (ItemKind.DIGEST.value, date_key),
        )
        return [_row_to_item(row, hydrated=True) for row in rows]

    def load_today_articles(
        self,
        date_key: str,
        feeds: Iterable[str] | None,
        limit: int,
        tz: tzinfo,
    ) -> list[HistoryItem]:
        """Hydrated articles whose effective date falls on ``date_key`` in ``tz``.

        The effective date is the published date, falling back to saved_at.
        Results are newest first and truncated to ``limit`` (0 = no limit).
        """
        allowed = [f for f in dict.fromkeys(feeds or []) if f]
        sql = f"SELECT {_COLUMNS} FROM history_items WHERE {_ARTICLE_FILTER}"
        params: list[Any] = []
        if allowed:
            sql += f" AND feed_url IN ({', '.join('?' for _ in allowed)})"
            params.extend(allowed)

        selected = []
        for row in self._query(sql, params):
            item = _row_to_item(row, hydrated=True)
            effective = item.effective_date
            if effective is None or date_key_in(effective, tz) != date_key:
                continue
            selected.append(item)

        selected = sort_by_recency(selected)
        if limit > 0:
            selected = selected[:limit]
        return selected

    def import_legacy_jsonl(self, path: str) -> int:
        """Import a legacy JSONL history file without overwriting newer rows.

        The file is renamed to ``<path>.migrated`` once its rows are committed,
        so the import runs once.
        """
        if not os.path.exists(path):
            return 0
        items = read_legacy_jsonl(path)
        with self._transaction() as conn:
            cur = conn.executemany(
                _INSERT_IGNORE_SQL,
                [_item_params(item) for item in items],
            )
            imported = cur.rowcount if cur.rowcount >= 0 else len(items)
        os.replace(path, path + ".migrated")
        logger.info(f"Migrated {imported} history items from {path}")
        return imported


def open_store(db_path: str) -> HistoryStore:
    """Open (creating if needed) the history database at ``db_path``."""
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    store = HistoryStore(conn=conn)
    store.init()
    return store


def init_db(settings: Settings | None = None) -> HistoryStore:
    """Open the configured store, importing a legacy JSONL history once."""
    s = settings or Settings.from_env()
    store = open_store(s.db_path)
    if s.legacy_history_path and os.path.exists(s.legacy_history_path):
        store.import_legacy_jsonl(s.legacy_history_path)
    return store
