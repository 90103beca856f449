from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from ...competition.scoring import AgentRanking
from ...competition.session import SessionConfig
from ...competition.strategies import ExtractedStrategy


class SessionCreate(BaseModel):
    pair: str = "XRPEUR"
    agent_count: int = 5
    starting_capital: float = 1000.0
    decision_interval_ms: int = 60_000
    max_duration_hours: float = 4.0
    session_budget_usd: float = 1.0
    per_agent_budget_usd: Optional[float] = None
    model_id: Optional[str] = Field(default=None, max_length=100)
    leverage: float = 10.0
    archetype_ids: List[str] = Field(default_factory=list)
    use_master_agent: bool = True

    def to_config(self, default_model: str) -> SessionConfig:
        return SessionConfig(
            pair=self.pair.strip().upper(),
            agent_count=self.agent_count,
            starting_capital=self.starting_capital,
            decision_interval_ms=self.decision_interval_ms,
            max_duration_hours=self.max_duration_hours,
            session_budget_usd=self.session_budget_usd,
            per_agent_budget_usd=self.per_agent_budget_usd,
            model_id=self.model_id or default_model,
            leverage=self.leverage,
            archetype_ids=tuple(self.archetype_ids),
            use_master_agent=self.use_master_agent,
        )


class SessionCreated(BaseModel):
    session_id: str
    agent_ids: List[str]
    status: str
    roster: Optional[Dict[str, Any]] = None


class ControlResponse(BaseModel):
    changed: bool
    status: str
    session_id: Optional[str] = None


class RankingResponse(BaseModel):
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

    @classmethod
    def from_ranking(cls, ranking: AgentRanking) -> 'RankingResponse':
        return cls(**ranking.to_dict())


class SessionListItem(BaseModel):
    id: str
    status: str
    pair: str
    theme: Optional[str] = ""
    tick: int = 0
    created_at: float
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None
    winner_name: Optional[str] = None
    total_cost_usd: float = 0.0


class StrategyExtract(BaseModel):
    agent_id: str = Field(min_length=1, max_length=64)


class StrategyResponse(BaseModel):
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

    @classmethod
    def from_strategy(cls, strategy: ExtractedStrategy) -> 'StrategyResponse':
        return cls(**strategy.to_dict())
