"""
Dramatic moment detection for the arena.

Runs after every round over the cross-agent snapshot and produces the
face-off, lead change, near-death, comeback, market shock and milestone
events. Win streaks are fed in as trades close.
"""

import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Set, Tuple

from ..agents.agent_interface import AgentState
from ..data.events import (
    ArenaEvent,
    ComebackPayload,
    EventType,
    FaceOffPayload,
    HotStreakPayload,
    Importance,
    LeadChangePayload,
    MarketShockPayload,
    MilestonePayload,
    NearDeathPayload,
    create_event,
)

logger = logging.getLogger(__name__)

NEAR_DEATH_HEALTH = 25.0
NEAR_DEATH_REARM_HEALTH = 40.0
COMEBACK_LOW_HEALTH = 40.0
COMEBACK_RECOVERED_HEALTH = 70.0
MARKET_SHOCK_PCT = 1.0
HOT_STREAK_MIN = 3
HOT_STREAK_CRITICAL = 5
MILESTONE_THRESHOLDS = (10.0, 25.0, 50.0, 100.0)


class ArenaEventDetector:
    """Stateful detector; one instance per session."""

    def __init__(self, pair: str = ""):
        self.pair = pair
        self._leader_id: Optional[str] = None
        self._previous_prices: Deque[float] = deque(maxlen=10)
        self._streaks: Dict[str, int] = {}
        self._lowest_health: Dict[str, float] = {}
        self._near_death_alerted: Set[str] = set()
        self._comeback_alerted: Set[str] = set()
        self._face_offs: Set[Tuple[str, str]] = set()
        self._milestones: Dict[str, Set[float]] = {}

    def lowest_health(self, agent_id: str) -> float:
        return self._lowest_health.get(agent_id, 100.0)

    def streak(self, agent_id: str) -> int:
        return self._streaks.get(agent_id, 0)

    def detect(
        self,
        agents: Sequence[AgentState],
        price: float,
        timestamp: Optional[float] = None,
    ) -> List[ArenaEvent]:
        """Detect dramatic events after a round and update tracking state."""
        events: List[ArenaEvent] = []
        events.extend(self._check_face_offs(agents, price, timestamp))
        events.extend(self._check_lead_change(agents, price, timestamp))
        events.extend(self._check_near_deaths(agents, price, timestamp))
        events.extend(self._check_comebacks(agents, price, timestamp))
        events.extend(self._check_milestones(agents, price, timestamp))
        events.extend(self._check_market_shock(price, timestamp))

        for agent in agents:
            if agent.health < self.lowest_health(agent.agent_id):
                self._lowest_health[agent.agent_id] = agent.health
        return events

    def record_trade_result(
        self,
        agent: AgentState,
        won: bool,
        price: float,
        timestamp: Optional[float] = None,
    ) -> Optional[ArenaEvent]:
        """Update the win streak; returns a hot_streak event at three or more wins."""
        if not won:
            self._streaks[agent.agent_id] = 0
            return None

        streak = self._streaks.get(agent.agent_id, 0) + 1
        self._streaks[agent.agent_id] = streak
        if streak < HOT_STREAK_MIN:
            return None

        return create_event(
            EventType.HOT_STREAK,
            HotStreakPayload(streak=streak),
            title=f"{agent.name} is on fire!",
            detail=f"{agent.name} has won {streak} trades in a row",
            importance=Importance.CRITICAL if streak >= HOT_STREAK_CRITICAL else Importance.HIGH,
            price_at=price,
            agent_id=agent.agent_id,
            agent_name=agent.name,
            timestamp=timestamp,
        )

    def _check_face_offs(self, agents, price, timestamp) -> List[ArenaEvent]:
        events = []
        open_agents = [a for a in agents if a.has_position and not a.is_dead]
        for i, first in enumerate(open_agents):
            for second in open_agents[i + 1:]:
                if first.position.side == second.position.side:
                    continue
                key = tuple(sorted((first.agent_id, second.agent_id)))
                if key in self._face_offs:
                    continue
                self._face_offs.add(key)
                events.append(create_event(
                    EventType.FACE_OFF,
                    FaceOffPayload(
                        agent1_id=first.agent_id,
                        agent1_name=first.name,
                        side1=first.position.side,
                        agent2_id=second.agent_id,
                        agent2_name=second.name,
                        side2=second.position.side,
                    ),
                    title=f"{first.name} vs {second.name}",
                    detail=(
                        f"{first.name} ({first.position.side}) vs {second.name} "
                        f"({second.position.side}) - opposing bets on {self.pair}"
                    ),
                    importance=Importance.HIGH,
                    price_at=price,
                    timestamp=timestamp,
                ))

        by_id = {a.agent_id: a for a in agents}
        for key in list(self._face_offs):
            a, b = by_id.get(key[0]), by_id.get(key[1])
            if (
                a is None or b is None
                or not a.has_position or not b.has_position
                or a.position.side == b.position.side
            ):
                self._face_offs.discard(key)
        return events

    def _check_lead_change(self, agents, price, timestamp) -> List[ArenaEvent]:
        alive = [a for a in agents if not a.is_dead]
        if len(alive) < 2:
            return []

        leader = min(alive, key=lambda a: (-a.equity, a.registration_index))
        previous_id = self._leader_id
        self._leader_id = leader.agent_id
        if previous_id is None or previous_id == leader.agent_id:
            return []

        previous = next((a for a in agents if a.agent_id == previous_id), None)
        previous_name = previous.name if previous else None
        return [create_event(
            EventType.LEAD_CHANGE,
            LeadChangePayload(
                new_leader_id=leader.agent_id,
                new_leader_name=leader.name,
                old_leader_id=previous_id,
                old_leader_name=previous_name,
                pnl_percent=leader.pnl_percent,
            ),
            title=f"{leader.name} takes the lead!",
            detail=(
                f"{leader.name} overtakes {previous_name or 'the previous leader'} "
                f"with {leader.pnl_percent:+.1f}% returns"
            ),
            importance=Importance.HIGH,
            price_at=price,
            agent_id=leader.agent_id,
            agent_name=leader.name,
            timestamp=timestamp,
        )]

    def _check_near_deaths(self, agents, price, timestamp) -> List[ArenaEvent]:
        events = []
        for agent in agents:
            if agent.is_dead:
                continue
            if agent.health <= NEAR_DEATH_HEALTH and agent.agent_id not in self._near_death_alerted:
                self._near_death_alerted.add(agent.agent_id)
                events.append(create_event(
                    EventType.NEAR_DEATH,
                    NearDeathPayload(health=agent.health),
                    title=f"{agent.name} on death's door",
                    detail=f"{agent.name} drops to {agent.health:.0f}% health - elimination looms",
                    importance=Importance.CRITICAL,
                    price_at=price,
                    agent_id=agent.agent_id,
                    agent_name=agent.name,
                    timestamp=timestamp,
                ))
            elif agent.health > NEAR_DEATH_REARM_HEALTH:
                self._near_death_alerted.discard(agent.agent_id)
        return events

    def _check_comebacks(self, agents, price, timestamp) -> List[ArenaEvent]:
        events = []
        for agent in agents:
            if agent.is_dead or agent.agent_id in self._comeback_alerted:
                continue
            lowest = self.lowest_health(agent.agent_id)
            if lowest < COMEBACK_LOW_HEALTH and agent.health > COMEBACK_RECOVERED_HEALTH:
                self._comeback_alerted.add(agent.agent_id)
                events.append(create_event(
                    EventType.COMEBACK,
                    ComebackPayload(lowest_health=lowest, current_health=agent.health),
                    title=f"{agent.name} stages a comeback!",
                    detail=f"{agent.name} recovers from {lowest:.0f}% to {agent.health:.0f}% health",
                    importance=Importance.HIGH,
                    price_at=price,
                    agent_id=agent.agent_id,
                    agent_name=agent.name,
                    timestamp=timestamp,
                ))
        return events

    def _check_milestones(self, agents, price, timestamp) -> List[ArenaEvent]:
        events = []
        for agent in agents:
            if agent.is_dead:
                continue
            reached = self._milestones.setdefault(agent.agent_id, set())
            return_pct = agent.pnl_percent
            for threshold in MILESTONE_THRESHOLDS:
                if return_pct >= threshold and threshold not in reached:
                    reached.add(threshold)
                    events.append(create_event(
                        EventType.MILESTONE,
                        MilestonePayload(threshold_pct=threshold, return_pct=return_pct),
                        title=f"{agent.name} hits +{threshold:.0f}%",
                        detail=f"{agent.name} is up {return_pct:.1f}% on starting capital",
                        importance=Importance.CRITICAL if threshold >= 50 else Importance.HIGH,
                        price_at=price,
                        agent_id=agent.agent_id,
                        agent_name=agent.name,
                        timestamp=timestamp,
                    ))
        return events

    def _check_market_shock(self, price, timestamp) -> List[ArenaEvent]:
        events = []
        if self._previous_prices:
            last = self._previous_prices[-1]
            change_pct = (price - last) / last * 100 if last else 0.0
            if abs(change_pct) > MARKET_SHOCK_PCT:
                direction = "surges" if change_pct > 0 else "plunges"
                events.append(create_event(
                    EventType.MARKET_SHOCK,
                    MarketShockPayload(previous_price=last, change_pct=change_pct),
                    title=f"{self.pair or 'Market'} {direction} {abs(change_pct):.1f}%",
                    detail=f"Price moved from {last:.5f} to {price:.5f} in one interval",
                    importance=Importance.CRITICAL if abs(change_pct) > 2 * MARKET_SHOCK_PCT else Importance.HIGH,
                    price_at=price,
                    timestamp=timestamp,
                ))
        self._previous_prices.append(price)
        return events
