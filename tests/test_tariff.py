from __future__ import annotations

from app.billing.tariff import DEFAULT_MODEL, TARIFF, compute_cost, estimate_tokens, price_for


def test_cost_rounds_up_to_a_whole_unit() -> None:
    # 1000 * 250 + 500 * 1000 = 750_000 per-million units
    assert compute_cost("gpt-4o", 1000, 500) == 1


def test_zero_usage_is_free_and_any_usage_is_not() -> None:
    assert compute_cost("gpt-4o", 0, 0) == 0
    assert compute_cost("gpt-4o-mini", 1, 0) == 1


def test_unknown_model_uses_default_price() -> None:
    assert price_for("some-future-model") == TARIFF[DEFAULT_MODEL]
    assert compute_cost("some-future-model", 4000, 2000) == compute_cost(DEFAULT_MODEL, 4000, 2000)


def test_cost_is_monotonic_in_tokens() -> None:
    costs = [compute_cost("gpt-4", tokens, tokens) for tokens in (0, 10, 1_000, 10_000, 250_000)]
    assert costs == sorted(costs)


def test_estimate_tokens_uses_four_characters_per_token() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
