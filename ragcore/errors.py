"""
Error taxonomy for the RAG context core.

Three families cross the public boundary:

  ConfigurationError -- bad chunking parameters, missing credentials,
                        unknown provider.  Fail fast, never retried.
  RetrievalError     -- embedding or nearest-neighbour failure.  Surfaced
                        to the caller, who decides whether to retry the turn.
  ProviderError      -- normalised LLM backend failure carrying a
                        {code, retryable, message} triple.

Data problems (empty query, whitespace-only document) are not errors: they
produce empty results instead.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_API_KEY = "INVALID_API_KEY"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RagCoreError(Exception):
    """Base class for every error raised by ragcore."""


class ConfigurationError(RagCoreError):
    """Invalid configuration detected before any work was attempted."""


class RetrievalError(RagCoreError):
    """Embedding or nearest-neighbour search failed; no partial results."""

    def __init__(self, message: str, stage: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.retryable = retryable

    def __repr__(self) -> str:
        return f"RetrievalError(stage={self.stage!r}, retryable={self.retryable}, message={self.message!r})"


class ProviderError(RagCoreError):
    """
    Backend-independent LLM failure.

    Callers decide whether to retry purely from `retryable`; the original
    SDK exception is kept on `__cause__` for debugging only.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.retryable = retryable
        self.provider = provider
        self.model = model
        self.status = status

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "retryable": self.retryable,
            "message": self.message,
            "provider": self.provider,
            "model": self.model,
        }

    def __repr__(self) -> str:
        return (
            f"ProviderError(code={self.code.value}, retryable={self.retryable}, "
            f"provider={self.provider!r}, message={self.message!r})"
        )
