"""
Tests for the session spend budget.
"""

import asyncio

import pytest

from agent_arena.agents.budget import SpendBudget
from agent_arena.agents.llm_client import (
    estimate_cost,
    estimate_tokens,
    extract_json,
    resolve_model,
    worst_case_cost,
)
from agent_arena.exceptions import BudgetExhausted


class TestSpendBudget:
    """Reserve, settle and release."""

    @pytest.mark.asyncio
    async def test_settle_replaces_reservation_with_actual(self):
        """Spent reflects the actual cost, not the estimate."""
        budget = SpendBudget(1.0)

        reservation = await budget.reserve("agent-1", 0.3)
        assert budget.reserved_usd == pytest.approx(0.3)

        await budget.settle(reservation, 0.1)

        assert budget.reserved_usd == 0.0
        assert budget.spent_usd == pytest.approx(0.1)
        assert budget.spent_by("agent-1") == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_settle_twice_is_ignored(self):
        budget = SpendBudget(1.0)
        reservation = await budget.reserve("agent-1", 0.3)

        await budget.settle(reservation, 0.1)
        await budget.settle(reservation, 0.1)

        assert budget.spent_usd == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_cost_above_reservation_is_tracked(self):
        """Spend can pass the limit only by the estimation error, and that error is recorded."""
        budget = SpendBudget(1.0)
        reservation = await budget.reserve("agent-1", 0.9)

        await budget.settle(reservation, 1.05)

        assert budget.spent_usd == pytest.approx(1.05)
        assert budget.overrun_usd == pytest.approx(0.15)
        assert budget.spent_usd - budget.limit_usd <= budget.overrun_usd
        assert await budget.reserve("agent-1", 0.001) is None

    @pytest.mark.asyncio
    async def test_release_refunds(self):
        """A failed call costs nothing."""
        budget = SpendBudget(1.0)
        reservation = await budget.reserve("agent-1", 0.5)

        await budget.release(reservation)

        assert budget.spent_usd == 0.0
        assert budget.remaining_usd == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_denial_latches_exhausted(self):
        """Once denied, even a tiny request is refused for the rest of the session."""
        budget = SpendBudget(1.0)

        assert await budget.reserve("agent-1", 1.5) is None
        assert budget.exhausted
        assert await budget.reserve("agent-2", 0.001) is None

    @pytest.mark.asyncio
    async def test_per_key_limit_only_blocks_that_key(self):
        """An agent over its own limit does not exhaust the others."""
        budget = SpendBudget(1.0, per_key_limit_usd=0.2)

        first = await budget.reserve("agent-1", 0.15)
        await budget.settle(first, 0.15)

        assert await budget.reserve("agent-1", 0.1) is None
        assert budget.is_exhausted("agent-1")
        assert not budget.exhausted
        assert await budget.reserve("agent-2", 0.1) is not None

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overrun(self):
        """Ten agents racing for 0.3 each on a 1.0 budget: only three win."""
        budget = SpendBudget(1.0)

        results = await asyncio.gather(*(budget.reserve(f"agent-{i}", 0.3) for i in range(10)))

        granted = [r for r in results if r is not None]
        assert len(granted) == 3
        assert budget.reserved_usd <= budget.limit_usd

    @pytest.mark.asyncio
    async def test_require_raises(self):
        budget = SpendBudget(0.0)

        with pytest.raises(BudgetExhausted):
            await budget.require("commentary", 0.01)

    def test_to_dict(self):
        data = SpendBudget(2.0).to_dict()

        assert data == {
            "limit_usd": 2.0,
            "spent_usd": 0.0,
            "reserved_usd": 0.0,
            "remaining_usd": 2.0,
            "exhausted": False,
        }


class TestPricing:
    """Token pricing helpers."""

    def test_estimate_cost_uses_model_table(self):
        """gpt-4o-mini is 0.15 in / 0.60 out per million tokens."""
        assert estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(0.75)

    def test_provider_prefix_is_ignored(self):
        assert estimate_cost("openai/gpt-4o", 1000, 0) == estimate_cost("gpt-4o", 1000, 0)

    def test_unknown_model_uses_default_pricing(self):
        assert estimate_cost("mystery-model", 1000, 1000) == estimate_cost("gpt-4o-mini", 1000, 1000)

    def test_worst_case_counts_full_output(self):
        """The reservation assumes every allowed output token is used."""
        prompt = "x" * 400  # 100 tokens

        assert worst_case_cost("gpt-4o-mini", prompt, 400) == pytest.approx(estimate_cost("gpt-4o-mini", 100, 400))

    def test_system_prompt_is_priced_only_when_present(self):
        prompt = "x" * 400

        with_system = worst_case_cost("gpt-4o-mini", prompt, 400, system="y" * 41)

        assert estimate_tokens("") == 0
        assert estimate_tokens("y" * 41) == 11
        assert with_system == pytest.approx(estimate_cost("gpt-4o-mini", 111, 400))

    def test_resolve_model_adds_provider(self):
        assert resolve_model("gpt-4o-mini") == "openai/gpt-4o-mini"
        assert resolve_model("anthropic/claude-3-haiku") == "anthropic/claude-3-haiku"


class TestExtractJson:
    """JSON recovery from model output."""

    def test_plain_json(self):
        assert extract_json('{"action": "hold"}') == {"action": "hold"}

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"action": "close"}\n```'

        assert extract_json(text) == {"action": "close"}

    def test_json_inside_prose(self):
        assert extract_json('I think {"action": "dca", "size_pct": 5} is best.') == {"action": "dca", "size_pct": 5}

    def test_garbage(self):
        assert extract_json("no json here") is None
        assert extract_json("") is None
        assert extract_json("[1, 2, 3]") is None
