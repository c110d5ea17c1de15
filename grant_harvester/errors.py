"""Error taxonomy shared by every stage of the harvesting pipeline."""

from __future__ import annotations

import sqlite3
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx


class ErrorType(str, Enum):
    """Operator-facing error kinds."""

    NETWORK = "NETWORK"
    PARSING = "PARSING"
    VALIDATION = "VALIDATION"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    CAPTCHA = "CAPTCHA"
    DATABASE = "DATABASE"


@dataclass(slots=True)
class ScrapingError:
    """Structured error attached to every result object."""

    type: ErrorType
    message: str
    url: str | None = None
    stack: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        url: str | None = None,
        error_type: ErrorType | None = None,
        message: str | None = None,
    ) -> "ScrapingError":
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            type=error_type or categorize_error(exc),
            message=message if message is not None else str(exc),
            url=url,
            stack=stack,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "message": self.message,
            "url": self.url,
            "timestamp": self.timestamp.isoformat(),
        }


class HarvesterError(Exception):
    """Base class for errors raised by grant_harvester."""

    kind: ErrorType | None = None


class ConfigurationError(HarvesterError):
    kind = ErrorType.PARSING


class UnknownEngineError(ConfigurationError):
    def __init__(self, engine: str) -> None:
        super().__init__(f"Unsupported scraping engine: {engine}")
        self.engine = engine


class SourceNotFoundError(ConfigurationError):
    def __init__(self, source_id: str) -> None:
        super().__init__(f"Source configuration not found for source_id: {source_id}")
        self.source_id = source_id


class JobCancelledError(HarvesterError):
    def __init__(self) -> None:
        super().__init__("Job was cancelled")


class ExtractionError(HarvesterError):
    kind = ErrorType.PARSING


class RateLimitError(ExtractionError):
    kind = ErrorType.RATE_LIMIT


class AuthenticationError(ExtractionError):
    kind = ErrorType.AUTHENTICATION


class CaptchaError(ExtractionError):
    kind = ErrorType.CAPTCHA


class RecordValidationError(HarvesterError):
    kind = ErrorType.VALIDATION


class StorageError(HarvesterError):
    kind = ErrorType.DATABASE


class TransactionTimeoutError(StorageError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"database transaction exceeded timeout of {timeout:.1f}s")
        self.timeout = timeout


# Checked in order; the first keyword found in the lowercased message wins.
_MESSAGE_KEYWORDS: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (
        ErrorType.NETWORK,
        ("enotfound", "econnrefused", "econnreset", "timeout", "timed out", "connection refused"),
    ),
    (ErrorType.PARSING, ("parse", "selector")),
    (ErrorType.VALIDATION, ("validation",)),
    (ErrorType.RATE_LIMIT, ("rate limit", "too many requests")),
    (ErrorType.AUTHENTICATION, ("auth", "unauthorized", "forbidden")),
    (ErrorType.CAPTCHA, ("captcha",)),
    (ErrorType.DATABASE, ("database", "sqlite", "transaction", "deadlock")),
)


def categorize_error(exc: BaseException) -> ErrorType:
    """Map an exception to an :class:`ErrorType`; unknown errors are PARSING."""

    if isinstance(exc, HarvesterError) and exc.kind is not None:
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return ErrorType.RATE_LIMIT
        if status in (401, 403):
            return ErrorType.AUTHENTICATION
        return ErrorType.NETWORK
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return ErrorType.NETWORK
    if isinstance(exc, sqlite3.Error):
        return ErrorType.DATABASE
    message = str(exc).lower()
    for error_type, keywords in _MESSAGE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return error_type
    return ErrorType.PARSING


__all__ = [
    "AuthenticationError",
    "CaptchaError",
    "ConfigurationError",
    "ErrorType",
    "ExtractionError",
    "HarvesterError",
    "JobCancelledError",
    "RateLimitError",
    "RecordValidationError",
    "ScrapingError",
    "SourceNotFoundError",
    "StorageError",
    "TransactionTimeoutError",
    "UnknownEngineError",
    "categorize_error",
]
