"""Exception hierarchy for the reading engine."""

from __future__ import annotations

from enum import Enum


class NewsdeckError(Exception):
    """Base class for engine errors."""


class FetchErrorType(str, Enum):
    """Classification of single-feed fetch failures."""

    TIMEOUT = "timeout"
    HTTP_4XX = "http_4xx"
    HTTP_5XX = "http_5xx"
    CONNECTION_ERROR = "connection_error"
    PARSE_ERROR = "parse_error"
    INVALID_URL = "invalid_url"


class FeedFetchError(NewsdeckError):
    """A single feed could not be fetched or parsed."""

    def __init__(self, message: str, url: str, error_type: FetchErrorType):
        super().__init__(message)
        self.url = url
        self.error_type = error_type

    @property
    def timed_out(self) -> bool:
        return self.error_type == FetchErrorType.TIMEOUT


class StorageError(NewsdeckError):
    """The history store could not complete a read or write."""


class InsightError(NewsdeckError):
    """Insight generation produced no usable result."""


class DigestError(NewsdeckError):
    """Daily digest generation produced no usable result."""


class GroupingError(NewsdeckError):
    """Feed grouping produced no usable result."""
