from __future__ import annotations

import json
import re
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT_SERVER = "transient_server"
    MALFORMED_RESPONSE = "malformed_response"
    FATAL = "fatal"
    CANCELLED = "cancelled"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT_SERVER, ErrorKind.MALFORMED_RESPONSE})
# Kinds whose exhaustion still leaves the item worth another round.
REQUEUE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT_SERVER})


class PipelineError(RuntimeError):
    pass


class ConfigError(PipelineError):
    """Missing or unusable configuration; aborts startup."""


class ValidationError(PipelineError):
    """A work item or its payload cannot be used; never retried."""


class MalformedResponseError(PipelineError):
    pass


class EmptyStreamError(MalformedResponseError):
    def __init__(self, message: str = "No valid chunks received from stream"):
        super().__init__(message)


class PersistenceError(PipelineError):
    pass


class GeminiApiError(PipelineError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_status: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_status = error_status
        self.retry_after = retry_after


_RATE_LIMIT_STATUSES = {"RESOURCE_EXHAUSTED"}
_TRANSIENT_STATUSES = {"UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED"}
_RATE_LIMIT_PATTERN = re.compile(
    r"\b429\b|\brate[\s_-]?limit|too many requests|resource[\s_]exhausted|\bquota\b",
    re.IGNORECASE,
)
_TRANSIENT_PATTERN = re.compile(r"\b50[0234]\b|\bunavailable\b|\boverloaded\b", re.IGNORECASE)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a failed attempt onto the retry taxonomy.

    Structured status codes win; message matching is only the last resort
    for errors that carry nothing else.
    """
    if isinstance(exc, (ConfigError, ValidationError)):
        return ErrorKind.FATAL
    if isinstance(exc, MalformedResponseError):
        return ErrorKind.MALFORMED_RESPONSE

    status_code = _status_code_of(exc)
    if status_code is not None:
        if status_code == 429:
            return ErrorKind.RATE_LIMITED
        if 500 <= status_code < 600:
            return ErrorKind.TRANSIENT_SERVER
        if status_code != 200:
            return ErrorKind.FATAL

    error_status = getattr(exc, "error_status", None)
    if error_status in _RATE_LIMIT_STATUSES:
        return ErrorKind.RATE_LIMITED
    if error_status in _TRANSIENT_STATUSES:
        return ErrorKind.TRANSIENT_SERVER

    if isinstance(exc, httpx.TransportError):
        return ErrorKind.TRANSIENT_SERVER
    if isinstance(exc, json.JSONDecodeError):
        return ErrorKind.MALFORMED_RESPONSE

    message = str(exc)
    if _RATE_LIMIT_PATTERN.search(message):
        return ErrorKind.RATE_LIMITED
    if _TRANSIENT_PATTERN.search(message):
        return ErrorKind.TRANSIENT_SERVER
    return ErrorKind.FATAL


def _status_code_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None
