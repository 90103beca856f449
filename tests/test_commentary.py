"""
Tests for template and LLM commentary.
"""

import random

import pytest

from agent_arena.agents.agent_interface import AgentState
from agent_arena.agents.budget import SpendBudget
from agent_arena.agents.llm_client import estimate_cost
from agent_arena.config import ArenaSettings
from agent_arena.data.commentary import COMMENTARY_KEY, CommentaryEngine, first_sentence
from agent_arena.data.events import (
    EventType,
    LeadChangePayload,
    NearDeathPayload,
    create_event,
)

from conftest import FakeLLM, llm_error


def lead_change():
    return create_event(
        EventType.LEAD_CHANGE,
        LeadChangePayload(
            new_leader_id="agent-2", new_leader_name="Rex",
            old_leader_id="agent-1", old_leader_name="Nova", pnl_percent=4.2,
        ),
        title="Rex takes the lead!",
        detail="Rex overtakes Nova with +4.2% returns",
    )


def near_death():
    return create_event(EventType.NEAR_DEATH, NearDeathPayload(health=20.0), title="Nova on death's door")


def standings():
    return [
        AgentState(
            agent_id="agent-1", name="Nova", archetype_id="scalper", registration_index=0,
            starting_capital=1000.0, balance=990.0, equity=990.0, peak_equity=1000.0, rank=2, health=60.0,
        ),
        AgentState(
            agent_id="agent-2", name="Rex", archetype_id="whale", registration_index=1,
            starting_capital=1000.0, balance=1042.0, equity=1042.0, peak_equity=1042.0, rank=1,
        ),
    ]


class TestTemplateLines:
    """Zero-cost template commentary."""

    def test_generic_pool_is_rendered(self):
        engine = CommentaryEngine(rng=random.Random(1))

        line = engine.line("on_death", {"name": "Nova"})

        assert "Nova" in line
        assert "{" not in line

    def test_agent_templates_take_priority(self):
        """An agent's own line wins most of the time."""
        engine = CommentaryEngine(rng=random.Random(2))
        own = {"on_entry": ["{name} goes {side}, no regrets."]}

        lines = [engine.line("on_entry", {"name": "Nova", "side": "long", "price": "1.0"}, own) for _ in range(50)]

        assert lines.count("Nova goes long, no regrets.") > 25

    def test_unknown_placeholders_are_kept(self):
        engine = CommentaryEngine(rng=random.Random(3))

        line = engine.line("on_taunt", {"name": "Nova"}, {"on_taunt": ["{name} eyes {target}"]})

        assert line == "Nova eyes {target}"

    def test_unknown_trigger_has_a_default(self):
        engine = CommentaryEngine()

        assert engine.line("on_nothing", {"name": "Nova"}) == "Nova makes a move."


class TestLlmCommentary:
    """LLM lines for dramatic events."""

    @pytest.mark.asyncio
    async def test_dramatic_event_gets_llm_line(self):
        """A lead change is narrated, trimmed to one sentence and paid for."""
        llm = FakeLLM(default='"Rex storms ahead! Nova can only watch."', tokens_in=150, tokens_out=20)
        budget = SpendBudget(1.0)
        engine = CommentaryEngine(llm=llm, budget=budget)

        line = await engine.narrate(lead_change(), standings(), "Rex takes the lead!")

        cost = estimate_cost("gpt-4o-mini", 150, 20)
        assert line == "Rex storms ahead!"
        assert engine.llm_calls == 1
        assert engine.cost_usd == pytest.approx(cost)
        assert budget.spent_by(COMMENTARY_KEY) == pytest.approx(cost)
        assert "Standings: 1. Rex" in llm.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_routine_event_uses_template(self):
        llm = FakeLLM()
        engine = CommentaryEngine(llm=llm)

        line = await engine.narrate(near_death(), standings(), "template")

        assert line == "template"
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_probability_zero_never_calls(self):
        llm = FakeLLM()
        engine = CommentaryEngine(llm=llm, settings=ArenaSettings(commentary_llm_probability=0.0))

        assert await engine.narrate(lead_change(), standings(), "template") == "template"
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_exhausted_budget_falls_back(self):
        """No budget means the template line and no call."""
        llm = FakeLLM()
        engine = CommentaryEngine(llm=llm, budget=SpendBudget(0.0))

        line = await engine.narrate(lead_change(), standings(), "template")

        assert line == "template"
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_llm_error_falls_back_and_refunds(self):
        budget = SpendBudget(1.0)
        engine = CommentaryEngine(llm=FakeLLM(default=llm_error()), budget=budget)

        line = await engine.narrate(lead_change(), standings(), "template")

        assert line == "template"
        assert budget.spent_usd == 0.0
        assert budget.reserved_usd == 0.0

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back(self):
        engine = CommentaryEngine(llm=FakeLLM(default="   "))

        assert await engine.narrate(lead_change(), standings(), "template") == "template"


class TestHelpers:
    def test_first_sentence(self):
        assert first_sentence("  One. Two.  ") == "One."
        assert first_sentence('"Wow! Really."') == "Wow!"
        assert first_sentence("") == ""

    def test_standings_order(self):
        text = CommentaryEngine.standings(standings())

        assert text.startswith("1. Rex")
        assert "2. Nova - 60% HP, -1.0%" in text
