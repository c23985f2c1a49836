"""Tests for UsageAccountant: billing totals vs current context size."""

import pytest

from opencrabs.agent.models import TokenUsage
from opencrabs.agent.usage import UsageAccountant


def _flat_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    return (input_tokens + output_tokens) / 1000


class TestUsageAccountant:
    def test_starts_empty(self):
        accountant = UsageAccountant(_flat_cost)
        assert accountant.total == TokenUsage()
        assert accountant.context_tokens == 0
        assert accountant.cost == 0.0
        assert accountant.calls == 0

    def test_single_call(self):
        accountant = UsageAccountant(_flat_cost)
        cost = accountant.record("m", TokenUsage(10, 20))

        assert cost == pytest.approx(0.03)
        assert accountant.total == TokenUsage(10, 20)
        assert accountant.context_tokens == 10

    def test_totals_sum_but_context_is_last_call(self):
        accountant = UsageAccountant(_flat_cost)
        accountant.record("m", TokenUsage(10, 20))
        accountant.record("m", TokenUsage(15, 25))

        assert accountant.total == TokenUsage(25, 45)
        assert accountant.context_tokens == 15
        assert accountant.calls == 2

    def test_context_can_shrink(self):
        """After compaction the next call is smaller; context follows it."""
        accountant = UsageAccountant(_flat_cost)
        accountant.record("m", TokenUsage(5000, 10))
        accountant.record("m", TokenUsage(800, 10))

        assert accountant.context_tokens == 800

    def test_cost_is_per_call_with_each_calls_model(self):
        prices = {"cheap": 1.0, "pricey": 10.0}

        def cost_fn(model, input_tokens, output_tokens):
            return prices[model] * (input_tokens + output_tokens) / 1_000_000

        accountant = UsageAccountant(cost_fn)
        accountant.record("cheap", TokenUsage(1000, 0))
        accountant.record("pricey", TokenUsage(1000, 0))

        assert accountant.cost == pytest.approx(0.011)

    def test_cost_not_derived_from_aggregate(self):
        """A non-linear cost function makes per-call summing observable."""

        def tiered(model, input_tokens, output_tokens):
            return 1.0 if input_tokens > 100 else 0.0

        accountant = UsageAccountant(tiered)
        accountant.record("m", TokenUsage(60, 0))
        accountant.record("m", TokenUsage(60, 0))

        assert accountant.cost == 0.0
        assert accountant.total.input_tokens == 120

    def test_total_is_a_copy(self):
        accountant = UsageAccountant(_flat_cost)
        accountant.record("m", TokenUsage(1, 1))
        snapshot = accountant.total
        snapshot.input_tokens = 999

        assert accountant.total.input_tokens == 1
