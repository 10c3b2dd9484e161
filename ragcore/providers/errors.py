"""
Provider error normalisation.

Maps SDK, httpx and stdlib failures onto a single {code, retryable}
table so callers decide whether to retry from `ProviderError.retryable`
alone, never by re-inspecting provider-specific codes.

    400 -> INVALID_REQUEST   (no retry)
    401 -> INVALID_API_KEY   (no retry)
    403 -> FORBIDDEN         (no retry)
    404 -> NOT_FOUND         (no retry)
    429 -> RATE_LIMITED      (retry)
    5xx -> SERVER_ERROR      (retry, for 500/502/503/504)
    connection reset / timeout -> CONNECTION_ERROR (retry)
    anything else -> UNKNOWN_ERROR (no retry)
"""
from __future__ import annotations

import asyncio
from typing import Optional

import anthropic
import httpx
import openai

from ragcore.errors import ErrorCode, ProviderError

STATUS_TABLE: dict[int, tuple[ErrorCode, bool]] = {
    400: (ErrorCode.INVALID_REQUEST, False),
    401: (ErrorCode.INVALID_API_KEY, False),
    403: (ErrorCode.FORBIDDEN, False),
    404: (ErrorCode.NOT_FOUND, False),
    429: (ErrorCode.RATE_LIMITED, True),
    500: (ErrorCode.SERVER_ERROR, True),
    502: (ErrorCode.SERVER_ERROR, True),
    503: (ErrorCode.SERVER_ERROR, True),
    504: (ErrorCode.SERVER_ERROR, True),
}

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,          # includes APITimeoutError
    anthropic.APIConnectionError,       # includes APITimeoutError
    httpx.TransportError,               # includes TimeoutException
    ConnectionResetError,
    ConnectionAbortedError,
    TimeoutError,
    asyncio.TimeoutError,
)

_CONNECTION_ERRNO_NAMES = ("ECONNRESET", "ETIMEDOUT")


def code_for_status(status: Optional[int]) -> tuple[ErrorCode, bool]:
    if status is None:
        return ErrorCode.UNKNOWN_ERROR, False
    return STATUS_TABLE.get(status, (ErrorCode.UNKNOWN_ERROR, False))


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError)):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def normalize_error(
    exc: BaseException,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> ProviderError:
    """Translate any exception into a ProviderError.  ProviderErrors pass through."""
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc) or type(exc).__name__

    if isinstance(exc, _CONNECTION_ERRORS) or any(n in message for n in _CONNECTION_ERRNO_NAMES):
        return ProviderError(
            ErrorCode.CONNECTION_ERROR, message, True, provider=provider, model=model
        )

    status = _status_of(exc)
    code, retryable = code_for_status(status)
    return ProviderError(code, message, retryable, provider=provider, model=model, status=status)
