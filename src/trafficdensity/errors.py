from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis.exceptions


class TrafficDensityError(RuntimeError):
    """Base class for failures raised by the ingestion and search layers."""


class SourceFileNotFoundError(TrafficDensityError, FileNotFoundError):
    """Raised before any chunk runs when the import source does not exist."""


class RowParseError(TrafficDensityError, ValueError):
    def __init__(self, message: str, line_number: Optional[int] = None) -> None:
        self.line_number = line_number
        prefix = f"line {line_number}: " if line_number is not None else ""
        super().__init__(f"{prefix}{message}")


class InvalidFilterError(TrafficDensityError, ValueError):
    """Raised by the query compiler; no store call is made for a rejected filter set."""


class StoreUnavailableError(TrafficDensityError):
    """Connection-level failure; fatal for the current call, retryable by the caller."""


class OffsetLimitExceededError(TrafficDensityError):
    """The store refused the requested offset/limit window."""


class PartialChunkFailureError(TrafficDensityError):
    def __init__(self, message: str, chunk_index: int) -> None:
        self.chunk_index = chunk_index
        super().__init__(message)


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    kind: str
    message: str


def classify_store_error(exc: Exception) -> ErrorInfo:
    """Classify store/search failures into stable codes for reports and search failures."""

    text = str(exc)
    lower = text.lower()

    if isinstance(exc, InvalidFilterError):
        return ErrorInfo(code="invalid_filter", kind="query", message=text)
    if isinstance(exc, OffsetLimitExceededError):
        return ErrorInfo(code="offset_limit_exceeded", kind="query", message=text)
    if isinstance(exc, RowParseError):
        return ErrorInfo(code="parse_error", kind="data", message=text)

    if isinstance(exc, redis.exceptions.TimeoutError):
        return ErrorInfo(code="timeout", kind="network", message=text)
    if isinstance(exc, redis.exceptions.AuthenticationError) or "wrongpass" in lower:
        return ErrorInfo(code="auth", kind="network", message=text)
    if isinstance(exc, (redis.exceptions.ConnectionError, StoreUnavailableError)):
        return ErrorInfo(code="store_unavailable", kind="network", message=text)

    if isinstance(exc, redis.exceptions.ResponseError):
        if "offset exceeds maximum" in lower:
            return ErrorInfo(code="offset_limit_exceeded", kind="query", message=text)
        if "no such index" in lower or "unknown index name" in lower:
            return ErrorInfo(code="unknown_index", kind="query", message=text)
        if "syntax error" in lower:
            return ErrorInfo(code="query_syntax", kind="query", message=text)
        return ErrorInfo(code="query_error", kind="query", message=text)

    if isinstance(exc, PartialChunkFailureError):
        return ErrorInfo(code="chunk_failed", kind="store", message=text)

    return ErrorInfo(code="unknown", kind="unknown", message=text)
