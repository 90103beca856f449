"""
Tests for session configuration and the lifecycle state machine.
"""

import pytest

from agent_arena.agents.archetypes import ARCHETYPES
from agent_arena.competition.session import Session, SessionConfig, SessionStatus, SessionSummary
from agent_arena.exceptions import InvalidConfig, SessionConflict

from conftest import START_MS, session_config


class TestSessionConfig:
    """Validation."""

    def test_defaults_are_valid(self):
        SessionConfig().validate(known_archetypes=ARCHETYPES)

    @pytest.mark.parametrize("overrides, fragment", [
        ({"agent_count": 1}, "agent_count"),
        ({"agent_count": 9}, "agent_count"),
        ({"pair": " "}, "pair"),
        ({"starting_capital": 1.0}, "starting_capital"),
        ({"decision_interval_ms": 10}, "decision_interval_ms"),
        ({"max_duration_hours": 0}, "max_duration_hours"),
        ({"session_budget_usd": -1.0}, "session_budget_usd"),
        ({"per_agent_budget_usd": -0.5}, "per_agent_budget_usd"),
        ({"leverage": 150.0}, "leverage"),
        ({"archetype_ids": ("scalper", "ninja")}, "ninja"),
    ])
    def test_invalid_values_are_rejected(self, overrides, fragment):
        with pytest.raises(InvalidConfig, match=fragment):
            session_config(**overrides).validate(known_archetypes=ARCHETYPES)

    def test_all_problems_reported_together(self):
        with pytest.raises(InvalidConfig) as excinfo:
            session_config(agent_count=1, leverage=0.5).validate()

        assert "agent_count" in str(excinfo.value)
        assert "leverage" in str(excinfo.value)

    def test_dict_round_trip_keeps_tuple(self):
        config = session_config(archetype_ids=("whale", "degen"), per_agent_budget_usd=0.2)

        restored = SessionConfig.from_dict(config.to_dict())

        assert restored == config
        assert config.max_duration_ms == 4 * 3_600_000


class TestSessionLifecycle:
    """State machine and elapsed time."""

    def make_session(self):
        return Session(id="s1", config=session_config(), created_at=START_MS)

    def test_happy_path(self):
        session = self.make_session()

        for status in (
            SessionStatus.CONFIGURING,
            SessionStatus.RUNNING,
            SessionStatus.PAUSED,
            SessionStatus.RUNNING,
            SessionStatus.COMPLETED,
        ):
            session.transition(status)

        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.parametrize("path", [
        (SessionStatus.RUNNING,),
        (SessionStatus.CONFIGURING, SessionStatus.PAUSED),
        (SessionStatus.CONFIGURING, SessionStatus.RUNNING, SessionStatus.COMPLETED, SessionStatus.RUNNING),
    ])
    def test_illegal_transitions_raise(self, path):
        session = self.make_session()

        with pytest.raises(SessionConflict):
            for status in path:
                session.transition(status)

    def test_elapsed_excludes_pauses(self):
        """Paused time, finished or ongoing, is not counted."""
        session = self.make_session()
        session.started_at = START_MS
        session.paused_ms = 10_000

        assert session.elapsed_ms(START_MS + 60_000) == 50_000

        session.paused_at = START_MS + 60_000
        assert session.elapsed_ms(START_MS + 90_000) == 50_000

    def test_elapsed_stops_at_end(self):
        session = self.make_session()
        session.started_at = START_MS
        session.ended_at = START_MS + 30_000

        assert session.elapsed_ms(START_MS + 999_000) == 30_000
        assert self.make_session().elapsed_ms(START_MS + 1) == 0.0

    def test_price_window_is_bounded(self):
        session = self.make_session()

        for tick in range(150):
            session.tick = tick
            session.record_price(float(tick))

        assert len(session.price_window) == 100
        assert session.price_window[0] == (50, 50.0)
        assert session.to_dict()["price_window"][-1] == [149, 149.0]


class TestSessionSummary:
    def test_from_dict_restores_rankings(self):
        summary = SessionSummary(
            session_id="s1", end_reason="stopped", winner=None, rankings=[], titles=[],
            total_trades=0, total_llm_calls=0, decision_cost_usd=0.0, commentary_cost_usd=0.0,
            roster_cost_usd=0.0, total_cost_usd=0.0, start_price=1.0, end_price=1.0,
            market_change_pct=0.0, duration_ms=0.0, tick_count=0,
        )

        assert SessionSummary.from_dict(summary.to_dict()) == summary
