"""Time source and display timezone shared by every date computation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo

DATE_KEY_FORMAT = "%Y-%m-%d"


def local_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo or timezone.utc


def resolve_timezone(name: str | None) -> tzinfo:
    """Resolve a configured timezone name; empty or 'local' means system local."""
    name = (name or "").strip()
    if not name or name.lower() == "local":
        return local_timezone()
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


@dataclass(frozen=True)
class Clock:
    tz: tzinfo
    now_fn: Callable[[], datetime] | None = None

    @classmethod
    def from_name(cls, name: str | None) -> Clock:
        return cls(tz=resolve_timezone(name))

    def now(self) -> datetime:
        if self.now_fn is not None:
            current = self.now_fn()
            if current.tzinfo is None:
                current = current.replace(tzinfo=timezone.utc)
            return current.astimezone(self.tz)
        return datetime.now(self.tz)

    def today_key(self) -> str:
        return self.now().strftime(DATE_KEY_FORMAT)

    def date_key(self, value: datetime) -> str:
        return date_key_in(value, self.tz)


def date_key_in(value: datetime, tz: tzinfo) -> str:
    """Calendar date of ``value`` in ``tz``; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz).strftime(DATE_KEY_FORMAT)


def start_of_day(date_key: str, tz: tzinfo) -> datetime:
    return datetime.strptime(date_key, DATE_KEY_FORMAT).replace(tzinfo=tz)
