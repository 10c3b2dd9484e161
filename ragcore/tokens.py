"""
Token estimation.

Character-to-token ratios differ per provider and silently drive both
context trimming and cost accounting, so they live in one explicit,
provider-keyed registry instead of being scattered as magic numbers.

Defaults:
    default    -> ceil(len / 4.0)
    openai     -> ceil(len / 4.0)
    anthropic  -> ceil(len / 3.5)
"""
from __future__ import annotations

import math
from functools import lru_cache
from typing import Callable

from loguru import logger

TokenEstimator = Callable[[str], int]

DEFAULT_CHARS_PER_TOKEN = 4.0


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Deterministic character-based estimate.  Empty text costs 0 tokens."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def ratio_estimator(chars_per_token: float) -> TokenEstimator:
    def _estimate(text: str) -> int:
        return estimate_tokens(text, chars_per_token)

    _estimate.chars_per_token = chars_per_token  # type: ignore[attr-defined]
    return _estimate


_ESTIMATORS: dict[str, TokenEstimator] = {
    "default": ratio_estimator(4.0),
    "openai": ratio_estimator(4.0),
    "anthropic": ratio_estimator(3.5),
}


def register_estimator(name: str, estimator: TokenEstimator) -> None:
    """Plug in a custom estimator (e.g. a real tokenizer) for a provider key."""
    _ESTIMATORS[name] = estimator
    logger.debug(f"[Tokens] Registered estimator for {name!r}")


def get_estimator(provider: str | None = None) -> TokenEstimator:
    """Return the estimator for `provider`, falling back to the default ratio."""
    if provider is None:
        return _ESTIMATORS["default"]
    return _ESTIMATORS.get(provider, _ESTIMATORS["default"])


@lru_cache(maxsize=8)
def _encoding_for(model: str):
    import tiktoken

    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def tiktoken_estimator(model: str = "gpt-4o-mini") -> TokenEstimator:
    """Exact BPE counter for OpenAI models (cl100k_base for unknown models)."""

    def _count(text: str) -> int:
        return len(_encoding_for(model).encode(text))

    return _count
