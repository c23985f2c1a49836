"""Token and cost accounting across tool-loop iterations.

Two figures are tracked separately and must not be confused:
  - total usage: summed over every provider call (billing truth)
  - context_tokens: input tokens of the most recent call only (display
    truth -- how full the context window currently is)

Cost is computed per call with that call's model and summed, never
derived from the aggregate.
"""

from __future__ import annotations

from collections.abc import Callable

from opencrabs.agent.models import TokenUsage

# (model, input_tokens, output_tokens) -> USD
CostFunction = Callable[[str, int, int], float]


class UsageAccountant:
    def __init__(self, cost_fn: CostFunction) -> None:
        self._cost_fn = cost_fn
        self._total = TokenUsage()
        self._context_tokens = 0
        self._cost = 0.0
        self._calls = 0

    def record(self, model: str, usage: TokenUsage) -> float:
        """Fold one provider call into the running totals; return its cost."""
        call_cost = self._cost_fn(model, usage.input_tokens, usage.output_tokens)
        self._total = self._total + usage
        self._context_tokens = usage.input_tokens
        self._cost += call_cost
        self._calls += 1
        return call_cost

    @property
    def total(self) -> TokenUsage:
        return TokenUsage(self._total.input_tokens, self._total.output_tokens)

    @property
    def context_tokens(self) -> int:
        return self._context_tokens

    @property
    def cost(self) -> float:
        return self._cost

    @property
    def calls(self) -> int:
        return self._calls
