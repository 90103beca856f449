"""
Arena ranking and end-of-session titles.

Standings are a strict total order: equity first, then win rate, then lower
max drawdown, then registration order. A risk-adjusted return score (RARS)
is computed alongside for display.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Sequence

from ..agents.agent_interface import AgentState

logger = logging.getLogger(__name__)

# Consistency multiplier range is 0.75 - 1.25
CONSISTENCY_SPREAD = 0.5
DEAD_RARS_PENALTY = 10000.0


@dataclass(frozen=True)
class AgentRanking:
    agent_id: str
    name: str
    rank: int
    equity: float
    pnl_percent: float
    win_rate: float
    max_drawdown: float
    health: float
    status: str
    trade_count: int
    is_dead: bool
    rars_score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SessionTitle:
    title: str
    agent_id: str
    agent_name: str
    value: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_rars(state: AgentState) -> float:
    """
    Risk-adjusted return score.

    RARS = return% * consistency * survival, where consistency rewards a win
    rate above 50% and survival penalizes equity below starting capital.
    """
    closed = state.win_count + state.loss_count
    win_rate = state.win_count / closed if closed else 0.5
    return_pct = state.total_pnl / state.starting_capital * 100 if state.starting_capital else 0.0
    consistency = 1.0 + (win_rate - 0.5) * CONSISTENCY_SPREAD
    survival = min(1.0, state.equity / state.starting_capital) if state.starting_capital else 0.0

    score = return_pct * consistency * survival
    if state.is_dead:
        score -= DEAD_RARS_PENALTY
    return score


def ranking_key(state: AgentState):
    return (-state.equity, -state.win_rate, state.max_drawdown, state.registration_index)


def rank_agents(states: Sequence[AgentState]) -> List[AgentRanking]:
    """Rank agents deterministically; identical input always yields identical order."""
    ordered = sorted(states, key=ranking_key)
    return [
        AgentRanking(
            agent_id=state.agent_id,
            name=state.name,
            rank=position,
            equity=state.equity,
            pnl_percent=state.pnl_percent,
            win_rate=state.win_rate,
            max_drawdown=state.max_drawdown,
            health=state.health,
            status=state.status,
            trade_count=state.trade_count,
            is_dead=state.is_dead,
            rars_score=calculate_rars(state),
        )
        for position, state in enumerate(ordered, start=1)
    ]


def compute_session_titles(states: Sequence[AgentState]) -> List[SessionTitle]:
    """Awards for the end-of-session recap."""
    titles: List[SessionTitle] = []
    if not states:
        return titles

    alive = [s for s in states if not s.is_dead]
    with_trades = [s for s in states if s.trade_count > 0]

    best = rank_agents(states)[0]
    titles.append(SessionTitle(
        title="Best Trader",
        agent_id=best.agent_id,
        agent_name=best.name,
        value=f"{best.pnl_percent:+.1f}%",
    ))

    consistent = [s for s in with_trades if s.win_count + s.loss_count >= 3]
    if consistent:
        top = max(consistent, key=lambda s: (s.win_rate, -s.registration_index))
        titles.append(SessionTitle(
            title="Most Consistent",
            agent_id=top.agent_id,
            agent_name=top.name,
            value=f"{top.win_rate * 100:.0f}% win rate",
        ))

    if with_trades:
        # More margin per trade means more fees per trade
        top = max(with_trades, key=lambda s: (s.total_fees / s.trade_count, -s.registration_index))
        titles.append(SessionTitle(
            title="Biggest Risk Taker",
            agent_id=top.agent_id,
            agent_name=top.name,
            value=f"{top.total_fees / top.trade_count:.2f} avg fee",
        ))

    survivors = [s for s in alive if s.trade_count > 0]
    if survivors:
        top = max(survivors, key=lambda s: (s.trade_count, -s.registration_index))
        titles.append(SessionTitle(
            title="Survivor",
            agent_id=top.agent_id,
            agent_name=top.name,
            value=f"{top.trade_count} trades",
        ))

    speedsters = [s for s in with_trades if s.last_trade_at is not None]
    if speedsters:
        top = max(speedsters, key=lambda s: (s.trade_count, -s.registration_index))
        titles.append(SessionTitle(
            title="Speed Demon",
            agent_id=top.agent_id,
            agent_name=top.name,
            value=f"{top.trade_count} trades",
        ))

    return titles
