"""Achievement badges, awarded at most once per agent per session."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..agents.agent_interface import AgentState

SPEED_DEMON_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class Badge:
    id: str
    name: str
    description: str
    rarity: str


BADGE_DEFINITIONS: List[Badge] = [
    Badge("first_blood", "First Blood", "First profitable trade in session", "common"),
    Badge("speed_demon", "Speed Demon", "Profitable trade under 5 minutes", "uncommon"),
    Badge("comeback_kid", "Comeback Kid", "Position was -5% or worse, closed at +2% or better", "rare"),
    Badge("steady_eddie", "Steady Eddie", "5 consecutive wins", "rare"),
    Badge("phoenix", "Phoenix", "Recovered from below 25% to above 80% health", "epic"),
    Badge("lone_wolf", "Lone Wolf", "Only agent trading in that direction, and won", "rare"),
    Badge("cat_lives", "Cat Lives", "Survived below 30% health", "uncommon"),
    Badge("iron_hands", "Iron Hands", "Held through a -3% drawdown and profited", "rare"),
]

BADGES: Dict[str, Badge] = {badge.id: badge for badge in BADGE_DEFINITIONS}


@dataclass
class TradeOutcome:
    """Facts about a just-closed trade needed by the badge checks."""
    realized_pnl: float
    pnl_percent: float
    hold_ms: int
    worst_pnl_percent: float
    side: str
    consecutive_wins: int


def check_badges(
    agent: AgentState,
    all_agents: Sequence[AgentState],
    lowest_health_seen: float,
    trade: Optional[TradeOutcome] = None,
) -> List[Badge]:
    """Return badges newly earned by ``agent``; never repeats one it already holds."""
    earned: List[Badge] = []
    held = set(agent.badges)

    def award(badge_id: str):
        if badge_id not in held:
            held.add(badge_id)
            earned.append(BADGES[badge_id])

    if trade is not None:
        won = trade.realized_pnl > 0
        if won and agent.win_count <= 1:
            award("first_blood")
        if won and trade.hold_ms < SPEED_DEMON_MS:
            award("speed_demon")
        if trade.worst_pnl_percent <= -5 and trade.pnl_percent >= 2:
            award("comeback_kid")
        if trade.consecutive_wins >= 5:
            award("steady_eddie")
        if won:
            same_side = [
                other for other in all_agents
                if other.agent_id != agent.agent_id
                and other.has_position
                and other.position.side == trade.side
            ]
            if not same_side:
                award("lone_wolf")
        if won and trade.worst_pnl_percent <= -3:
            award("iron_hands")

    if not agent.is_dead and agent.health > 0 and lowest_health_seen < 30:
        award("cat_lives")
    if not agent.is_dead and agent.health > 80 and lowest_health_seen < 25:
        award("phoenix")

    return earned
