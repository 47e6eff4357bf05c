from __future__ import annotations

import os
from dataclasses import dataclass


def default_data_home() -> str:
    data_home = os.getenv("XDG_DATA_HOME", "").strip()
    if data_home:
        return data_home
    return os.path.join(os.path.expanduser("~"), ".local", "share")


def normalize_history_path(path: str) -> str:
    """Map legacy JSONL history paths onto the SQLite database path.

    ``~/.local/share/newsdeck/history.jsonl`` becomes
    ``~/.local/share/newsdeck/history.db``; any other path is kept.
    """
    path = (path or "").strip()
    if not path:
        return ""
    if os.path.splitext(path)[1].lower() == ".jsonl":
        return os.path.join(os.path.dirname(path), "history.db")
    return path


def split_feeds(raw: str) -> tuple[str, ...]:
    """Split a whitespace or comma separated feed list, dropping duplicates."""
    feeds: list[str] = []
    for part in raw.replace(",", " ").split():
        if part and part not in feeds:
            feeds.append(part)
    return tuple(feeds)


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    legacy_history_path: str
    feeds: tuple[str, ...]
    timezone: str
    per_feed_timeout: float
    batch_timeout: float
    ai_provider: str
    ai_model: str
    ai_timeout_seconds: int
    codex_command: str
    codex_sandbox: str
    codex_reasoning_effort: str
    codex_web_search: str
    digest_max_articles: int

    @property
    def ai_enabled(self) -> bool:
        return self.ai_provider not in ("", "none", "off", "disabled")

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        raw_path = os.getenv("DB_PATH", "").strip()
        if not raw_path:
            raw_path = os.path.join(default_data_home(), "newsdeck", "history.db")
        db_path = normalize_history_path(raw_path)
        if raw_path.lower().endswith(".jsonl"):
            legacy_path = raw_path
        else:
            legacy_path = os.path.join(os.path.dirname(db_path), "history.jsonl")

        ai_provider = os.getenv("AI_PROVIDER", "none").strip().lower()
        if _b("AI_DISABLED", "0"):
            ai_provider = "none"

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=db_path,
            legacy_history_path=legacy_path,
            feeds=split_feeds(os.getenv("FEEDS", "https://news.ycombinator.com/rss")),
            timezone=os.getenv("TIMEZONE", "local").strip(),
            per_feed_timeout=_f("PER_FEED_TIMEOUT", "8"),
            batch_timeout=_f("BATCH_TIMEOUT", "12"),
            ai_provider=ai_provider,
            ai_model=os.getenv("AI_MODEL", "").strip(),
            ai_timeout_seconds=_i("AI_TIMEOUT_SECONDS", "30"),
            codex_command=os.getenv("CODEX_COMMAND", "codex").strip(),
            codex_sandbox=os.getenv("CODEX_SANDBOX", "read-only").strip(),
            codex_reasoning_effort=os.getenv("CODEX_REASONING_EFFORT", "low").strip(),
            codex_web_search=os.getenv("CODEX_WEB_SEARCH", "disabled").strip(),
            digest_max_articles=_i("DIGEST_MAX_ARTICLES", "60"),
        )
