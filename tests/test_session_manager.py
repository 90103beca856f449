"""
Tests for SessionManager: lifecycle, rounds, end conditions and durability.
"""

import random

import pytest

from agent_arena.agents.agent_interface import ArenaAction, DecisionMode
from agent_arena.competition.manager import SessionManager
from agent_arena.competition.session import EndReason, SessionStatus
from agent_arena.data.events import EventType
from agent_arena.data.store import InMemorySessionStore
from agent_arena.exceptions import FeedStale, InvalidConfig, PersistenceFailure, SessionConflict

from conftest import MINUTE_MS, FakeLLM, agent_config, llm_error, session_config

HOUR_MS = 60 * MINUTE_MS


def events_of(manager, event_type):
    return [e for e in manager.get_event_buffer() if e.type == event_type]


def llm_manager(feed, store, settings, clock, llm):
    return SessionManager(feed=feed, llm=llm, store=store, settings=settings, clock=clock, rng=random.Random(11))


def mixed_roster():
    return [
        agent_config("scalper", DecisionMode.LLM),
        agent_config("whale", DecisionMode.RULES),
    ]


class FlakyStore(InMemorySessionStore):
    """In-memory store that raises PersistenceFailure while ``fail`` is set."""

    def __init__(self):
        super().__init__()
        self.fail = False

    async def save_session_snapshot(self, session, agents):
        if self.fail:
            raise PersistenceFailure("disk full")
        await super().save_session_snapshot(session, agents)

    async def save_decisions(self, session_id, decisions):
        if self.fail:
            raise PersistenceFailure("disk full")
        await super().save_decisions(session_id, decisions)


class TestLifecycle:
    """Create, start, pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_create_session_builds_classic_roster(self, manager):
        """A valid config yields a configuring session with announced roster."""
        handle = await manager.create_session(session_config(agent_count=3))

        assert manager.status == SessionStatus.CONFIGURING
        assert manager.session_id == handle.session_id
        assert len(handle.agent_ids) == 3
        assert all(agent_id.startswith(f"agent-{i + 1}-") for i, agent_id in enumerate(handle.agent_ids))
        assert manager.roster_intro["source"] == "classic"

        reveal = events_of(manager, EventType.ROSTER_REVEAL)
        assert len(reveal) == 1
        assert len(reveal[0].payload.agent_names) == 3

    @pytest.mark.asyncio
    async def test_invalid_config_is_rejected(self, manager):
        with pytest.raises(InvalidConfig):
            await manager.create_session(session_config(agent_count=1))

        assert manager.status == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_custom_roster_must_be_complete_and_unique(self, manager):
        with pytest.raises(InvalidConfig):
            await manager.create_session(session_config(agent_count=3), mixed_roster())

        twins = [agent_config("scalper", name="Twin"), agent_config("whale", name="Twin")]
        with pytest.raises(InvalidConfig):
            await manager.create_session(session_config(), twins)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager, feed):
        """Starting twice reports no change the second time."""
        feed.price = 0.52
        await manager.create_session(session_config())

        assert await manager.start() is True
        assert await manager.start() is False
        assert manager.status == SessionStatus.RUNNING
        assert manager.current_price == 0.52
        assert len(events_of(manager, EventType.SESSION_STARTED)) == 1

    @pytest.mark.asyncio
    async def test_create_while_running_conflicts(self, manager):
        await manager.create_session(session_config())
        await manager.start()

        with pytest.raises(SessionConflict):
            await manager.create_session(session_config())

    @pytest.mark.asyncio
    async def test_start_without_price_fails(self, manager, feed):
        """No opening price means the session stays configuring."""
        await manager.create_session(session_config())
        feed.fail = True

        with pytest.raises(FeedStale):
            await manager.start()

        assert manager.status == SessionStatus.CONFIGURING

    @pytest.mark.asyncio
    async def test_controls_without_session(self, manager):
        with pytest.raises(SessionConflict):
            await manager.start()
        with pytest.raises(SessionConflict):
            await manager.stop()

        assert manager.get_status_snapshot() == {"session_id": None, "status": "idle"}

    @pytest.mark.asyncio
    async def test_pause_excludes_time_and_blocks_rounds(self, manager, clock):
        """Paused time does not count and no rounds run while paused."""
        await manager.create_session(session_config())
        await manager.start()
        clock.advance(MINUTE_MS)

        assert await manager.pause() is True
        assert await manager.pause() is False
        with pytest.raises(SessionConflict):
            await manager.advance_round()

        clock.advance(10 * MINUTE_MS)
        assert await manager.resume() is True
        clock.advance(MINUTE_MS)

        assert manager.elapsed_ms() == pytest.approx(2 * MINUTE_MS)
        assert len(events_of(manager, EventType.SESSION_PAUSED)) == 1
        assert len(events_of(manager, EventType.SESSION_RESUMED)) == 1

    @pytest.mark.asyncio
    async def test_resume_while_running_changes_nothing(self, manager):
        await manager.create_session(session_config())
        await manager.start()
        buffered = len(manager.get_event_buffer())

        assert await manager.resume() is False

        assert manager.get_status_snapshot()["status"] == "running"
        assert len(manager.get_event_buffer()) == buffered
        assert events_of(manager, EventType.SESSION_RESUMED) == []

    @pytest.mark.asyncio
    async def test_stop_returns_summary_once(self, manager):
        """Stopping twice returns the same summary."""
        await manager.create_session(session_config())
        await manager.start()
        await manager.advance_round()

        summary = await manager.stop()

        assert manager.status == SessionStatus.COMPLETED
        assert summary.end_reason == "stopped"
        assert summary.tick_count == 1
        assert len(summary.rankings) == 2
        assert summary.winner.rank == 1
        assert await manager.stop() is summary
        assert len(events_of(manager, EventType.SESSION_ENDED)) == 1

    @pytest.mark.asyncio
    async def test_new_session_after_completion(self, manager):
        await manager.create_session(session_config())
        await manager.start()
        await manager.stop()

        handle = await manager.create_session(session_config())

        assert manager.session_id == handle.session_id
        assert manager.status == SessionStatus.CONFIGURING


class TestRounds:
    """What happens inside a round."""

    @pytest.mark.asyncio
    async def test_waiting_agents_publish_wait_events(self, manager):
        await manager.create_session(session_config())
        await manager.start()

        assert await manager.advance_round() is None

        assert manager.tick_count == 1
        waits = events_of(manager, EventType.AGENT_WAIT)
        assert {e.agent_id for e in waits} == set(manager.get_agent_configs())
        assert [r.rank for r in manager.get_rankings()] == [1, 2]

    @pytest.mark.asyncio
    async def test_tick_event_reaches_subscribers_only(self, manager):
        """Ticks are delivered live but never buffered."""
        await manager.create_session(session_config())
        await manager.start()
        seen = []
        manager.subscribe(seen.append)

        await manager.advance_round()

        ticks = [e for e in seen if e.type == EventType.TICK]
        assert len(ticks) == 1
        assert ticks[0].payload.tick == 1
        assert len(ticks[0].payload.agents) == 2
        assert events_of(manager, EventType.TICK) == []

    @pytest.mark.asyncio
    async def test_agent_failure_is_isolated(self, feed, store, settings, clock):
        """A failing LLM call marks that agent's round failed; others carry on."""
        arena = llm_manager(feed, store, settings, clock, FakeLLM(default=llm_error("503 upstream")))
        await arena.create_session(session_config(), mixed_roster())
        await arena.start()

        await arena.advance_round()

        errors = events_of(arena, EventType.AGENT_ERROR)
        scalper_id, whale_id = list(arena.get_agent_configs())
        assert [e.agent_id for e in errors] == [scalper_id]
        assert "503 upstream" in errors[0].detail
        states = {s.agent_id: s for s in arena.get_agent_snapshots()}
        assert states[scalper_id].failed_decisions == 1
        assert states[whale_id].failed_decisions == 0
        assert arena.status == SessionStatus.RUNNING
        await arena.stop()

    @pytest.mark.asyncio
    async def test_stale_feed_reported_once(self, manager, feed):
        """Consecutive stale rounds produce a single feed_stale event."""
        await manager.create_session(session_config())
        await manager.start()

        feed.fail = True
        await manager.advance_round()
        await manager.advance_round()

        assert manager.price_stale is True
        assert manager.current_price == 1.0
        assert len(events_of(manager, EventType.FEED_STALE)) == 1

        feed.fail = False
        await manager.advance_round()
        assert manager.price_stale is False

    @pytest.mark.asyncio
    async def test_countdown_announces_nearest_checkpoint(self, manager, clock):
        """Each checkpoint is announced once; skipped ones are folded in."""
        await manager.create_session(session_config(max_duration_hours=4.0))
        await manager.start()

        clock.advance(3 * HOUR_MS)
        await manager.advance_round()
        clock.advance(58 * MINUTE_MS)
        await manager.advance_round()
        clock.advance(MINUTE_MS / 2)
        await manager.advance_round()

        labels = [e.payload.label for e in events_of(manager, EventType.SESSION_COUNTDOWN)]
        assert labels == ["1 hour", "5 minutes"]


class TestEndConditions:
    """Deadline and forced close."""

    @pytest.mark.asyncio
    async def test_deadline_ends_session(self, manager, clock):
        await manager.create_session(session_config(max_duration_hours=1.0))
        await manager.start()
        await manager.advance_round()

        clock.advance(HOUR_MS)
        reason = await manager.advance_round()

        assert reason == EndReason.DEADLINE
        assert manager.status == SessionStatus.COMPLETED
        assert manager.summary.end_reason == "deadline"
        assert manager.summary.duration_ms == pytest.approx(HOUR_MS)

    @pytest.mark.asyncio
    async def test_stop_closes_open_positions(self, feed, store, settings, clock):
        """Open positions are closed at the last price when the session ends."""
        llm = FakeLLM(default={"action": "open_long", "confidence": 75, "size_pct": 10, "reasoning": "Up only."})
        arena = llm_manager(feed, store, settings, clock, llm)
        await arena.create_session(session_config(), mixed_roster())
        await arena.start()
        await arena.advance_round()
        scalper_id = next(iter(arena.get_agent_configs()))
        assert events_of(arena, EventType.TRADE_OPEN)[0].agent_id == scalper_id

        summary = await arena.stop()

        closes = events_of(arena, EventType.TRADE_CLOSE)
        assert [e.agent_id for e in closes] == [scalper_id]
        assert closes[0].payload.liquidation is False
        states = {s.agent_id: s for s in arena.get_agent_snapshots()}
        assert not states[scalper_id].has_position
        assert states[scalper_id].equity == pytest.approx(1000.0 - 2.8 - 2.6)
        assert summary.total_trades == 1
        assert summary.decision_cost_usd == pytest.approx(states[scalper_id].estimated_cost_usd)


class TestDurability:
    """Checkpoints, decision log and stored sessions."""

    @pytest.mark.asyncio
    async def test_completed_session_is_stored(self, manager, store):
        """The final checkpoint and decision log survive the session."""
        handle = await manager.create_session(session_config())
        await manager.start()
        await manager.advance_round()
        await manager.advance_round()
        await manager.stop()

        stored = await store.load_session(handle.session_id)

        assert stored.session["status"] == "completed"
        assert stored.session["summary"]["end_reason"] == "stopped"
        assert len(stored.agents) == 2
        assert len(stored.decisions) == 4
        assert {d["tick"] for d in stored.decisions} == {1, 2}

        listing = await manager.list_sessions()
        assert listing[0]["id"] == handle.session_id
        assert listing[0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_load_session_view_price_source(self, manager, feed):
        """Stored sessions are re-marked live when the feed answers."""
        handle = await manager.create_session(session_config())
        await manager.start()
        await manager.advance_round()
        await manager.stop()

        live = await manager.load_session_view(handle.session_id)
        assert live.price_source == "live"
        assert [a.agent_id for a in live.agents] == list(handle.agent_ids)
        assert len(live.rankings) == 2

        feed.fail = True
        stored = await manager.load_session_view(handle.session_id)
        assert stored.price_source == "stored"
        assert stored.current_price == 1.0

        assert await manager.load_session_view("missing") is None

    @pytest.mark.asyncio
    async def test_failed_checkpoint_is_retried(self, feed, settings, clock):
        """A store outage does not stop the session; the next round retries."""
        store = FlakyStore()
        store.fail = True
        arena = SessionManager(feed=feed, store=store, settings=settings, clock=clock, rng=random.Random(3))
        handle = await arena.create_session(session_config())
        await arena.start()
        await arena.advance_round()

        assert await store.load_session(handle.session_id) is None

        store.fail = False
        await arena.advance_round()

        stored = await store.load_session(handle.session_id)
        assert stored.session["tick"] == 2
        await arena.stop()


class TestAgentQueries:
    """Agent detail, decision log and strategy extraction."""

    @pytest.mark.asyncio
    async def test_live_and_stored_agent_detail(self, feed, store, settings, clock):
        """Closed trades keep their reasoning; only agents of the loaded session carry live state."""
        llm = FakeLLM(default={"action": "open_long", "confidence": 75, "size_pct": 10, "reasoning": "Up only."})
        arena = llm_manager(feed, store, settings, clock, llm)
        handle = await arena.create_session(session_config(), mixed_roster())
        await arena.start()
        await arena.advance_round()
        scalper_id = next(iter(arena.get_agent_configs()))
        await arena.stop()

        live = await arena.get_agent_detail(scalper_id)
        assert live.live_state is not None
        assert live.session_id == handle.session_id
        assert live.closed_positions[0]["entry_reasoning"] == "Up only."
        assert live.closed_positions[0]["exit_reasoning"] == "Session over"

        fresh = SessionManager(feed=feed, store=store, settings=settings, clock=clock)
        stored = await fresh.get_agent_detail(scalper_id)
        assert stored.live_state is None
        assert stored.state.trade_count == 1
        assert stored.to_dict()["positions"] == live.closed_positions
        assert await fresh.get_agent_detail("missing") is None

    @pytest.mark.asyncio
    async def test_agent_log_includes_buffered_decisions(self, manager):
        """Decisions not yet flushed by the round cadence still show up in the log."""
        handle = await manager.create_session(session_config())
        await manager.start()
        for _ in range(3):
            await manager.advance_round()
        agent_id = handle.agent_ids[0]

        page = await manager.get_agent_log(agent_id, limit=2)

        assert page.total == 3
        assert [d["tick"] for d in page.decisions] == [3, 2]
        assert (await manager.get_agent_log(agent_id, ArenaAction.CLOSE)).total == 0
        assert await manager.get_agent_log("missing") is None

    @pytest.mark.asyncio
    async def test_extract_strategy_from_finished_agent(self, feed, store, settings, clock):
        llm = FakeLLM(default={"action": "open_long", "confidence": 75, "size_pct": 10, "reasoning": "Up only."})
        arena = llm_manager(feed, store, settings, clock, llm)
        handle = await arena.create_session(session_config(), mixed_roster())
        await arena.start()
        await arena.advance_round()
        scalper_id = next(iter(arena.get_agent_configs()))
        await arena.stop()

        strategy = await arena.extract_strategy(scalper_id)

        assert strategy.source_session_id == handle.session_id
        assert strategy.total_trades == 1
        assert strategy.win_rate == 0.0
        # a single losing trade earns only its sample points
        assert strategy.rating == pytest.approx(2.5)
        assert strategy.config["archetype_id"] == "scalper"
        assert "XRPEUR" in strategy.description
        assert [s.id for s in await arena.list_strategies()] == [strategy.id]
        assert await arena.extract_strategy("missing") is None

        assert await arena.deactivate_strategy(strategy.id) is True
        assert await arena.list_strategies() == []
