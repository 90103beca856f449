"""
Strategy extraction.

Turns an agent's configuration and track record into a reusable strategy
template, rated 0-100 from its win rate, profitability and sample size.
"""

import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict

from ..agents.agent_interface import AgentConfig, AgentState

WIN_RATE_POINTS = 50.0
PROFIT_POINTS = 25.0
POINTS_PER_TRADE = 2.5
MAX_SAMPLE_POINTS = 25.0


def strategy_rating(win_rate: float, total_pnl: float, total_trades: int) -> float:
    """Win rate is worth 50, ending in profit 25, and each trade 2.5 up to 25."""
    rating = win_rate * WIN_RATE_POINTS
    if total_pnl > 0:
        rating += PROFIT_POINTS
    return rating + min(MAX_SAMPLE_POINTS, total_trades * POINTS_PER_TRADE)


@dataclass(frozen=True)
class ExtractedStrategy:
    id: str
    name: str
    description: str
    config: Dict[str, Any]
    source_session_id: str
    source_agent_id: str
    source_agent_name: str
    win_rate: float
    total_pnl: float
    max_drawdown: float
    total_trades: int
    rating: float
    created_at: float
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExtractedStrategy':
        return cls(**data)


def strategy_template(config: AgentConfig) -> Dict[str, Any]:
    """The tradeable part of an agent config, without its persona."""
    data = config.to_dict()
    return {
        "archetype_id": data["archetype_id"],
        "decision_mode": data["decision_mode"],
        "trading_philosophy": data["trading_philosophy"],
        "primary_indicators": data["primary_indicators"],
        "market_regime_preference": data["market_regime_preference"],
        "strategy": data["strategy"],
    }


def extract_strategy(
    session_id: str,
    state: AgentState,
    config: AgentConfig,
    pair: str,
    created_at: float,
) -> ExtractedStrategy:
    total_trades = state.win_count + state.loss_count
    win_rate = state.win_rate
    return ExtractedStrategy(
        id=uuid.uuid4().hex,
        name=f"{state.name}'s Strategy",
        description=(
            f"Extracted from {state.name} in session {session_id}. "
            f"Win rate: {win_rate * 100:.0f}%, P&L: {state.total_pnl:+.2f} on {pair}"
        ),
        config=strategy_template(config),
        source_session_id=session_id,
        source_agent_id=state.agent_id,
        source_agent_name=state.name,
        win_rate=win_rate,
        total_pnl=state.total_pnl,
        max_drawdown=state.max_drawdown,
        total_trades=total_trades,
        rating=strategy_rating(win_rate, state.total_pnl, total_trades),
        created_at=created_at,
    )
