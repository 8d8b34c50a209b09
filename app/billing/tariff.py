"""Static AI tariff in minor currency units per million tokens."""

from __future__ import annotations

from dataclasses import dataclass


TOKENS_PER_UNIT = 1_000_000


@dataclass(frozen=True, slots=True)
class ModelPrice:
    prompt: int
    completion: int


DEFAULT_MODEL = "gpt-4o"

TARIFF: dict[str, ModelPrice] = {
    "gpt-5": ModelPrice(prompt=1000, completion=3000),
    "gpt-4o": ModelPrice(prompt=250, completion=1000),
    "gpt-4o-mini": ModelPrice(prompt=15, completion=60),
    "gpt-4-turbo": ModelPrice(prompt=1000, completion=3000),
    "gpt-4": ModelPrice(prompt=3000, completion=6000),
    "gpt-3.5-turbo": ModelPrice(prompt=50, completion=150),
}


def price_for(model: str) -> ModelPrice:
    return TARIFF.get(model, TARIFF[DEFAULT_MODEL])


def compute_cost(model: str, prompt_tokens: int, completion_tokens: int) -> int:
    """Cost rounded up to the next whole minor unit; non-zero usage is never free."""
    price = price_for(model)
    numerator = max(prompt_tokens, 0) * price.prompt + max(completion_tokens, 0) * price.completion
    return -(-numerator // TOKENS_PER_UNIT)


def estimate_tokens(text: str) -> int:
    return -(-len(text) // 4)
