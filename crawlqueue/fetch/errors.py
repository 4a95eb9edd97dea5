"""Classification of failed API responses into typed, retry-annotated errors."""
from __future__ import annotations

import enum
from typing import Any, Dict, Optional

import httpx
import orjson


class ErrorType(str, enum.Enum):
    UNKNOWN = "unknown"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    SERVER_ERROR = "server_error"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    PRIVATE_TARGET = "private_target"
    BANNED_TARGET = "banned_target"
    QUARANTINED = "quarantined"


# 401 is retryable: a fresh request from the factory carries a refreshed token.
RETRYABLE: Dict[ErrorType, bool] = {
    ErrorType.UNKNOWN: False,
    ErrorType.RATE_LIMITED: True,
    ErrorType.NOT_FOUND: False,
    ErrorType.FORBIDDEN: False,
    ErrorType.SERVER_ERROR: True,
    ErrorType.BAD_REQUEST: False,
    ErrorType.UNAUTHORIZED: True,
    ErrorType.PRIVATE_TARGET: False,
    ErrorType.BANNED_TARGET: False,
    ErrorType.QUARANTINED: False,
}

PERMANENT = frozenset(
    {
        ErrorType.NOT_FOUND,
        ErrorType.PRIVATE_TARGET,
        ErrorType.BANNED_TARGET,
        ErrorType.QUARANTINED,
        ErrorType.BAD_REQUEST,
        ErrorType.FORBIDDEN,
    }
)


def is_retryable(error_type: ErrorType) -> bool:
    return RETRYABLE[error_type]


def is_permanent(error_type: ErrorType) -> bool:
    """Whether a job failing this way should skip its remaining retry budget."""
    return error_type in PERMANENT


class APIError(Exception):
    """A non-success API response with its classification."""

    def __init__(self, error_type: ErrorType, status_code: int, message: str) -> None:
        super().__init__(message)
        self.type = error_type
        self.status_code = status_code
        self.message = message

    @property
    def retryable(self) -> bool:
        return is_retryable(self.type)

    @property
    def permanent(self) -> bool:
        return is_permanent(self.type)

    def __repr__(self) -> str:
        return f"APIError(type={self.type.value}, status={self.status_code}, message={self.message!r})"


def _read_body(response: httpx.Response) -> tuple[str, Dict[str, Any]]:
    try:
        raw = response.content
    except httpx.ResponseNotRead:
        return "", {}
    text = raw.decode("utf-8", errors="replace")
    try:
        payload = orjson.loads(raw) if raw else {}
    except orjson.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    return text, payload


def _hint(reason: str, body: str, needle: str) -> bool:
    return reason == needle or needle in body


def classify_error(response: Optional[httpx.Response]) -> APIError:
    """Map a response to an ``APIError``; the status code decides, the body refines."""
    if response is None:
        return APIError(ErrorType.UNKNOWN, 0, "nil response")

    status = response.status_code
    body, payload = _read_body(response)
    reason = str(payload.get("reason") or "")
    api_message = str(payload.get("message") or "")

    if status == 429:
        error_type, message = ErrorType.RATE_LIMITED, "rate limited by API"
    elif status == 404:
        if _hint(reason, body, "private"):
            error_type, message = ErrorType.PRIVATE_TARGET, "target is private"
        elif _hint(reason, body, "banned"):
            error_type, message = ErrorType.BANNED_TARGET, "target is banned"
        else:
            error_type, message = ErrorType.NOT_FOUND, "resource not found (404)"
    elif status == 403:
        if _hint(reason, body, "quarantined"):
            error_type, message = ErrorType.QUARANTINED, "target is quarantined"
        else:
            error_type, message = ErrorType.FORBIDDEN, "forbidden (403)"
    elif status == 401:
        error_type, message = ErrorType.UNAUTHORIZED, "unauthorized (401) - token may be expired"
    elif status == 400:
        error_type, message = ErrorType.BAD_REQUEST, "bad request (400)"
    elif status >= 500:
        error_type, message = ErrorType.SERVER_ERROR, f"server error ({status})"
    elif status >= 400:
        error_type, message = ErrorType.BAD_REQUEST, f"client error ({status})"
    else:
        error_type, message = ErrorType.UNKNOWN, f"unexpected status ({status})"

    if api_message:
        message = f"{message}: {api_message}"
    elif reason:
        message = f"{message}: {reason}"
    return APIError(error_type, status, message)
