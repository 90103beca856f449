"""
Tests for dramatic moment detection.
"""

from agent_arena.agents.agent_interface import AgentState, Position
from agent_arena.data.events import EventType, Importance
from agent_arena.execution.event_triggers import ArenaEventDetector


def make_state(agent_id: str, index: int, equity: float = 1000.0, **kwargs) -> AgentState:
    values = dict(
        agent_id=agent_id,
        name=agent_id.title(),
        archetype_id="scalper",
        registration_index=index,
        starting_capital=1000.0,
        balance=equity,
        equity=equity,
        peak_equity=max(equity, 1000.0),
    )
    values.update(kwargs)
    return AgentState(**values)


def position(side: str) -> Position:
    return Position(
        id=f"pos-{side}", pair="XRPEUR", side=side, volume=100.0, avg_entry_price=1.0,
        leverage=10.0, margin_used=10.0, liquidation_price=0.9, opened_at=0.0,
    )


def types(events):
    return [e.type for e in events]


class TestLeadChange:
    """Leader tracking."""

    def test_first_round_sets_leader_silently(self):
        detector = ArenaEventDetector("XRPEUR")

        events = detector.detect([make_state("a", 0, 1010), make_state("b", 1, 990)], 1.0)

        assert EventType.LEAD_CHANGE not in types(events)

    def test_overtake_is_announced(self):
        """A new leader produces one lead_change naming both agents."""
        detector = ArenaEventDetector("XRPEUR")
        detector.detect([make_state("a", 0, 1010), make_state("b", 1, 990)], 1.0)

        events = detector.detect([make_state("a", 0, 990), make_state("b", 1, 1020)], 1.0)

        lead = [e for e in events if e.type == EventType.LEAD_CHANGE]
        assert len(lead) == 1
        assert lead[0].payload.new_leader_id == "b"
        assert lead[0].payload.old_leader_name == "A"
        assert lead[0].importance == Importance.HIGH

    def test_equal_equity_keeps_registration_order(self):
        detector = ArenaEventDetector()
        detector.detect([make_state("a", 0), make_state("b", 1)], 1.0)

        events = detector.detect([make_state("b", 1), make_state("a", 0)], 1.0)

        assert EventType.LEAD_CHANGE not in types(events)


class TestFaceOff:
    """Opposing positions."""

    def test_face_off_fires_once_per_matchup(self):
        """Opposite sides fire once until the matchup breaks up."""
        detector = ArenaEventDetector("XRPEUR")
        long_a = make_state("a", 0, position=position("long"))
        short_b = make_state("b", 1, position=position("short"))

        first = detector.detect([long_a, short_b], 1.0)
        second = detector.detect([long_a, short_b], 1.0)

        assert types(first).count(EventType.FACE_OFF) == 1
        assert EventType.FACE_OFF not in types(second)

        flat_b = make_state("b", 1)
        detector.detect([long_a, flat_b], 1.0)
        again = detector.detect([long_a, short_b], 1.0)

        assert types(again).count(EventType.FACE_OFF) == 1

    def test_same_side_is_not_a_face_off(self):
        detector = ArenaEventDetector()

        events = detector.detect(
            [make_state("a", 0, position=position("long")), make_state("b", 1, position=position("long"))], 1.0
        )

        assert EventType.FACE_OFF not in types(events)


class TestHealthEvents:
    """Near death and comeback."""

    def test_near_death_rearms_after_recovery(self):
        """One alert per dip below 25; recovery above 40 re-arms it."""
        detector = ArenaEventDetector()

        assert types(detector.detect([make_state("a", 0, health=20.0)], 1.0)) == [EventType.NEAR_DEATH]
        assert detector.detect([make_state("a", 0, health=18.0)], 1.0) == []

        detector.detect([make_state("a", 0, health=35.0)], 1.0)
        assert detector.detect([make_state("a", 0, health=20.0)], 1.0) == []

        detector.detect([make_state("a", 0, health=50.0)], 1.0)
        events = detector.detect([make_state("a", 0, health=20.0)], 1.0)
        assert types(events) == [EventType.NEAR_DEATH]
        assert events[0].importance == Importance.CRITICAL

    def test_dead_agents_do_not_trigger(self):
        detector = ArenaEventDetector()

        assert detector.detect([make_state("a", 0, health=0.0, is_dead=True)], 1.0) == []

    def test_comeback_after_deep_dip(self):
        """Below 40 then above 70 is a comeback, announced once."""
        detector = ArenaEventDetector()
        detector.detect([make_state("a", 0, health=30.0)], 1.0)
        assert detector.lowest_health("a") == 30.0

        events = detector.detect([make_state("a", 0, health=75.0)], 1.0)

        assert types(events) == [EventType.COMEBACK]
        assert events[0].payload.lowest_health == 30.0
        assert detector.detect([make_state("a", 0, health=80.0)], 1.0) == []


class TestMilestonesAndShocks:
    """Return milestones and price shocks."""

    def test_milestone_fires_once_per_threshold(self):
        detector = ArenaEventDetector()

        events = detector.detect([make_state("a", 0, equity=1300.0)], 1.0)

        thresholds = [e.payload.threshold_pct for e in events if e.type == EventType.MILESTONE]
        assert thresholds == [10.0, 25.0]
        assert detector.detect([make_state("a", 0, equity=1300.0)], 1.0) == []

    def test_market_shock_levels(self):
        """Moves over 1% are HIGH, over 2% CRITICAL."""
        detector = ArenaEventDetector("XRPEUR")

        assert detector.detect([], 1.0) == []
        calm = detector.detect([], 1.005)
        high = detector.detect([], 1.005 * 1.015)
        critical = detector.detect([], 1.005 * 1.015 * 0.97)

        assert calm == []
        assert [e.importance for e in high] == [Importance.HIGH]
        assert [e.importance for e in critical] == [Importance.CRITICAL]
        assert critical[0].title.startswith("XRPEUR plunges")


class TestHotStreak:
    """Win streaks."""

    def test_streak_levels_and_reset(self):
        """Three wins is HIGH, five CRITICAL; a loss resets the count."""
        detector = ArenaEventDetector()
        state = make_state("a", 0)

        results = [detector.record_trade_result(state, True, 1.0) for _ in range(5)]

        assert results[:2] == [None, None]
        assert results[2].importance == Importance.HIGH
        assert results[4].importance == Importance.CRITICAL
        assert results[4].payload.streak == 5

        assert detector.record_trade_result(state, False, 1.0) is None
        assert detector.streak("a") == 0
