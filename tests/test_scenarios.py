"""
End-to-end arena scenarios driven round by round.
"""

import random

import pytest

from agent_arena.agents.agent_interface import DecisionMode
from agent_arena.agents.llm_client import estimate_cost
from agent_arena.competition.manager import SessionManager
from agent_arena.competition.session import EndReason, SessionStatus
from agent_arena.config import ArenaSettings
from agent_arena.data.events import EventType, Importance

from conftest import FakeLLM, agent_config, session_config

ALL_IN = {"action": "open_long", "confidence": 80, "size_pct": 100, "reasoning": "All in."}
HOLD = {"action": "hold", "confidence": 50, "reasoning": "Watching."}


def events_of(manager, event_type):
    return [e for e in manager.get_event_buffer() if e.type == event_type]


def drain(stream):
    messages = []
    while stream.pending():
        messages.append(stream.get_nowait())
    return messages


class TestLiquidation:
    """An all-in leveraged long wiped out by a drop."""

    @pytest.fixture
    def all_in_settings(self):
        return ArenaSettings(max_size_pct=100, commentary_llm_probability=0.0)

    @pytest.mark.asyncio
    async def test_liquidated_agent_dies_and_stops_deciding(self, feed, store, clock, all_in_settings):
        """Price through the liquidation level forfeits the margin and kills the agent."""
        llm = FakeLLM(default=ALL_IN)
        arena = SessionManager(
            feed=feed, llm=llm, store=store, settings=all_in_settings, clock=clock, rng=random.Random(1)
        )
        await arena.create_session(
            session_config(),
            [agent_config("scalper", DecisionMode.LLM), agent_config("whale", DecisionMode.RULES)],
        )
        await arena.start()
        await arena.advance_round()
        gambler_id, whale_id = list(arena.get_agent_configs())

        opened = events_of(arena, EventType.TRADE_OPEN)
        assert len(opened) == 1
        assert opened[0].payload.liquidation_price == pytest.approx(0.905)

        clock.advance()
        feed.price = 0.90
        await arena.advance_round()

        closes = events_of(arena, EventType.TRADE_CLOSE)
        assert len(closes) == 1
        assert closes[0].payload.liquidation is True
        assert closes[0].importance == Importance.CRITICAL
        assert closes[0].title.endswith("LIQUIDATED")
        deaths = events_of(arena, EventType.AGENT_DEATH)
        assert [e.agent_id for e in deaths] == [gambler_id]

        states = {s.agent_id: s for s in arena.get_agent_snapshots()}
        gambler = states[gambler_id]
        assert gambler.is_dead
        assert gambler.status == "liquidated"
        assert gambler.death_reason.startswith("Liquidated at")
        assert abs(gambler.equity) < 0.01
        assert not states[whale_id].is_dead

        clock.advance()
        await arena.advance_round()

        assert len(llm.calls) == 1
        assert arena.get_rankings()[-1].agent_id == gambler_id
        await arena.stop()

    @pytest.mark.asyncio
    async def test_everyone_liquidated_ends_session(self, feed, store, clock, all_in_settings):
        """When the last agent dies the next round boundary ends the session."""
        arena = SessionManager(
            feed=feed, llm=FakeLLM(default=ALL_IN), store=store,
            settings=all_in_settings, clock=clock, rng=random.Random(2),
        )
        await arena.create_session(
            session_config(),
            [agent_config("scalper", DecisionMode.LLM), agent_config("degen", DecisionMode.LLM)],
        )
        await arena.start()
        await arena.advance_round()

        feed.price = 0.85
        clock.advance()
        await arena.advance_round()
        reason = await arena.advance_round()

        assert reason == EndReason.ALL_DEAD
        assert arena.status == SessionStatus.COMPLETED
        assert arena.summary.end_reason == "all_dead"
        assert len(events_of(arena, EventType.AGENT_DEATH)) == 2


class TestBudgetExhaustion:
    """A small session budget runs dry."""

    @pytest.mark.asyncio
    async def test_llm_agent_falls_back_to_holding(self, feed, store, clock, settings):
        """Once the budget denies a call the agent holds for free for the rest of the session."""
        llm = FakeLLM(default=HOLD, tokens_in=300, tokens_out=100)
        arena = SessionManager(feed=feed, llm=llm, store=store, settings=settings, clock=clock, rng=random.Random(4))
        config = session_config(model_id="gpt-4o", session_budget_usd=0.01)
        handle = await arena.create_session(
            config,
            [agent_config("scalper", DecisionMode.LLM), agent_config("whale", DecisionMode.RULES)],
        )
        thinker_id, rules_id = handle.agent_ids
        await arena.start()

        for _ in range(15):
            clock.advance()
            await arena.advance_round()
            if events_of(arena, EventType.BUDGET_EXHAUSTED):
                break

        exhausted = events_of(arena, EventType.BUDGET_EXHAUSTED)
        assert len(exhausted) == 1
        assert exhausted[0].agent_id == thinker_id
        assert exhausted[0].payload.scope == "session"

        calls_at_exhaustion = len(llm.calls)
        for _ in range(3):
            clock.advance()
            await arena.advance_round()

        assert len(llm.calls) == calls_at_exhaustion
        assert len(events_of(arena, EventType.BUDGET_EXHAUSTED)) == 1

        states = {s.agent_id: s for s in arena.get_agent_snapshots()}
        assert states[thinker_id].budget_limited is True
        assert states[thinker_id].llm_call_count == calls_at_exhaustion
        assert states[rules_id].budget_limited is False
        assert arena.budget.spent_usd <= config.session_budget_usd
        assert arena.budget.spent_usd == pytest.approx(calls_at_exhaustion * estimate_cost("gpt-4o", 300, 100))

        summary = await arena.stop()
        stored = await store.load_session(handle.session_id)
        limited = [d for d in stored.decisions if d["budget_limited"]]
        assert limited
        assert {d["agent_id"] for d in limited} == {thinker_id}
        assert all(d["action"] == "hold" for d in limited)
        assert summary.decision_cost_usd == pytest.approx(arena.budget.spent_usd)


class TestObserverReplay:
    """Observers that connect late or reconnect."""

    @pytest.mark.asyncio
    async def test_replay_then_live_without_duplicates(self, manager, clock):
        """A stream gets the preamble, one replay of the buffer, then only newer events."""
        await manager.create_session(session_config())
        await manager.start()
        for _ in range(2):
            clock.advance()
            await manager.advance_round()

        buffered_ids = [e.id for e in manager.get_event_buffer()]
        stream = manager.connect_observer()
        preamble = drain(stream)

        assert [m.kind for m in preamble] == ["connected", "agent_update", "leaderboard", "event_replay"]
        assert preamble[0].data["status"] == "running"
        assert len(preamble[1].data) == 2
        replay_ids = [e.id for e in preamble[3].data]
        assert replay_ids == buffered_ids

        clock.advance()
        await manager.advance_round()
        live = drain(stream)

        assert live and all(m.kind == "event" for m in live)
        live_ids = [m.data.id for m in live]
        assert len(live_ids) == len(set(live_ids))
        assert not set(live_ids) & set(replay_ids)
        assert EventType.TICK in {m.data.type for m in live}

        stream.close()
        clock.advance()
        await manager.advance_round()

        missed_ids = [e.id for e in manager.get_event_buffer()]
        second = manager.connect_observer()
        replay = [m for m in drain(second) if m.kind == "event_replay"][0]
        assert [e.id for e in replay.data] == missed_ids
        assert stream.pending() == 0
        second.close()
