"""Per-model pricing table (input $/M tokens, output $/M tokens)."""
from __future__ import annotations

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "gpt-4-turbo":              (10.000, 30.000),
    "gpt-3.5-turbo":             (0.500,  1.500),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
    "claude-3-haiku-20240307":   (0.250,  1.250),
}

_DEFAULT_RATES = (0.150, 0.600)


def cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Compute estimated cost in USD for a given model and token counts."""
    rates = _MODEL_PRICING.get(model, _DEFAULT_RATES)
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000
