"""Static model pricing and token estimation helpers."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final


@dataclass(frozen=True)
class ModelPrice:
    """USD price per one million tokens."""

    input_per_million: float
    output_per_million: float


MODEL_PRICING: Final[dict[str, ModelPrice]] = {
    "gpt-4o-mini": ModelPrice(0.15, 0.60),
    "gpt-4o": ModelPrice(2.50, 10.00),
    "gpt-4-turbo": ModelPrice(10.00, 30.00),
    "claude-3-5-sonnet": ModelPrice(3.00, 15.00),
    "claude-3-haiku": ModelPrice(0.25, 1.25),
    "gemini-1.5-flash": ModelPrice(0.075, 0.30),
    "gemini-1.5-pro": ModelPrice(1.25, 5.00),
    "gemini-2.0-flash": ModelPrice(0.075, 0.30),
}

DEFAULT_MODEL: Final[str] = "gpt-4o-mini"

# Rough heuristic: ~4 characters per token for English text.
CHARS_PER_TOKEN: Final[int] = 4
PROMPT_OVERHEAD: Final[float] = 1.1


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def estimate_prompt_tokens(
    user_prompt: str, *, system_prompt: str | None = None, context: str | None = None
) -> int:
    """Estimate prompt tokens including message-formatting overhead."""
    total = estimate_tokens(user_prompt)
    if system_prompt:
        total += estimate_tokens(system_prompt)
    if context:
        total += estimate_tokens(context)
    # rounding keeps float noise (100 * 1.1 == 110.00000000000001) from adding a token
    return math.ceil(round(total * PROMPT_OVERHEAD, 6))


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Return the USD cost of a call; unknown models are priced as the default tier."""
    price = MODEL_PRICING.get(model) or MODEL_PRICING[DEFAULT_MODEL]
    return (
        input_tokens / 1_000_000 * price.input_per_million
        + output_tokens / 1_000_000 * price.output_per_million
    )
