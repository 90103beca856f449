"""
Session data model: configuration, lifecycle state machine and summary.
"""

import logging
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..config import ArenaSettings
from ..exceptions import InvalidConfig, SessionConflict
from .scoring import AgentRanking, SessionTitle

logger = logging.getLogger(__name__)

PRICE_WINDOW_SIZE = 100


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class EndReason(str, Enum):
    STOPPED = "stopped"
    DEADLINE = "deadline"
    ALL_DEAD = "all_dead"


# Allowed lifecycle transitions
TRANSITIONS: Dict[SessionStatus, Tuple[SessionStatus, ...]] = {
    SessionStatus.IDLE: (SessionStatus.CONFIGURING,),
    SessionStatus.CONFIGURING: (SessionStatus.RUNNING,),
    SessionStatus.RUNNING: (SessionStatus.PAUSED, SessionStatus.COMPLETED),
    SessionStatus.PAUSED: (SessionStatus.RUNNING, SessionStatus.COMPLETED),
    SessionStatus.COMPLETED: (),
}


@dataclass(frozen=True)
class SessionConfig:
    """Immutable parameters of one arena session."""
    pair: str = "XRPEUR"
    agent_count: int = 5
    starting_capital: float = 1000.0
    decision_interval_ms: int = 60_000
    max_duration_hours: float = 4.0
    session_budget_usd: float = 1.0
    per_agent_budget_usd: Optional[float] = None
    model_id: str = "gpt-4o-mini"
    leverage: float = 10.0
    archetype_ids: Tuple[str, ...] = ()
    use_master_agent: bool = True

    def validate(self, settings: Optional[ArenaSettings] = None, known_archetypes=None):
        """Raise InvalidConfig listing every violated constraint."""
        settings = settings or ArenaSettings()
        problems: List[str] = []

        if not self.pair or not self.pair.strip():
            problems.append("pair must be non-empty")
        if not 2 <= self.agent_count <= 8:
            problems.append(f"agent_count must be between 2 and 8, got {self.agent_count}")
        if not settings.min_starting_capital <= self.starting_capital <= settings.max_starting_capital:
            problems.append(
                f"starting_capital must be between {settings.min_starting_capital:g} and "
                f"{settings.max_starting_capital:g}, got {self.starting_capital:g}"
            )
        if self.decision_interval_ms < settings.min_decision_interval_ms:
            problems.append(
                f"decision_interval_ms must be at least {settings.min_decision_interval_ms}, "
                f"got {self.decision_interval_ms}"
            )
        if not 0 < self.max_duration_hours <= settings.max_duration_hours:
            problems.append(
                f"max_duration_hours must be in (0, {settings.max_duration_hours:g}], "
                f"got {self.max_duration_hours:g}"
            )
        if self.session_budget_usd < 0:
            problems.append("session_budget_usd must be >= 0")
        if self.per_agent_budget_usd is not None and self.per_agent_budget_usd < 0:
            problems.append("per_agent_budget_usd must be >= 0")
        if not 1 <= self.leverage <= 100:
            problems.append(f"leverage must be between 1 and 100, got {self.leverage:g}")
        if known_archetypes is not None:
            unknown = [a for a in self.archetype_ids if a not in known_archetypes]
            if unknown:
                problems.append(f"unknown archetype ids: {', '.join(unknown)}")

        if problems:
            raise InvalidConfig("; ".join(problems))

    @property
    def max_duration_ms(self) -> float:
        return self.max_duration_hours * 3_600_000

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["archetype_ids"] = list(self.archetype_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionConfig':
        data = dict(data)
        data["archetype_ids"] = tuple(data.get("archetype_ids") or ())
        return cls(**data)


@dataclass(frozen=True)
class SessionHandle:
    session_id: str
    agent_ids: Tuple[str, ...]


@dataclass
class SessionSummary:
    session_id: str
    end_reason: str
    winner: Optional[AgentRanking]
    rankings: List[AgentRanking]
    titles: List[SessionTitle]
    total_trades: int
    total_llm_calls: int
    decision_cost_usd: float
    commentary_cost_usd: float
    roster_cost_usd: float
    total_cost_usd: float
    start_price: float
    end_price: float
    market_change_pct: float
    duration_ms: float
    tick_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "end_reason": self.end_reason,
            "winner": self.winner.to_dict() if self.winner else None,
            "rankings": [r.to_dict() for r in self.rankings],
            "titles": [t.to_dict() for t in self.titles],
            "total_trades": self.total_trades,
            "total_llm_calls": self.total_llm_calls,
            "decision_cost_usd": self.decision_cost_usd,
            "commentary_cost_usd": self.commentary_cost_usd,
            "roster_cost_usd": self.roster_cost_usd,
            "total_cost_usd": self.total_cost_usd,
            "start_price": self.start_price,
            "end_price": self.end_price,
            "market_change_pct": self.market_change_pct,
            "duration_ms": self.duration_ms,
            "tick_count": self.tick_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionSummary':
        data = dict(data)
        data["winner"] = AgentRanking(**data["winner"]) if data.get("winner") else None
        data["rankings"] = [AgentRanking(**r) for r in data.get("rankings", [])]
        data["titles"] = [SessionTitle(**t) for t in data.get("titles", [])]
        return cls(**data)


@dataclass
class Session:
    """Mutable record of one session; owned by the SessionManager."""
    id: str
    config: SessionConfig
    created_at: float
    status: SessionStatus = SessionStatus.IDLE
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    paused_at: Optional[float] = None
    paused_ms: float = 0.0
    tick: int = 0
    start_price: Optional[float] = None
    last_price: Optional[float] = None
    price_stale: bool = False
    price_window: Deque[Tuple[int, float]] = field(default_factory=lambda: deque(maxlen=PRICE_WINDOW_SIZE))
    end_reason: Optional[EndReason] = None
    summary: Optional[SessionSummary] = None
    theme: str = ""
    master_commentary: str = ""
    roster_source: str = "classic"

    def transition(self, target: SessionStatus):
        if target not in TRANSITIONS[self.status]:
            raise SessionConflict(f"Cannot move session from {self.status.value} to {target.value}")
        logger.info(f"Session {self.id}: {self.status.value} -> {target.value}")
        self.status = target

    def elapsed_ms(self, now_ms: float) -> float:
        """Wall-clock time spent running, excluding pauses."""
        if self.started_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else now_ms
        paused = self.paused_ms
        if self.paused_at is not None:
            paused += end - self.paused_at
        return max(0.0, end - self.started_at - paused)

    def record_price(self, price: float, stale: bool = False):
        self.last_price = price
        self.price_stale = stale
        self.price_window.append((self.tick, price))

    def to_dict(self, now_ms: Optional[float] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "paused_ms": self.paused_ms,
            "elapsed_ms": self.elapsed_ms(now_ms if now_ms is not None else (self.ended_at or self.created_at)),
            "tick": self.tick,
            "start_price": self.start_price,
            "last_price": self.last_price,
            "price_stale": self.price_stale,
            "price_window": [list(p) for p in self.price_window],
            "end_reason": self.end_reason.value if self.end_reason else None,
            "summary": self.summary.to_dict() if self.summary else None,
            "theme": self.theme,
            "master_commentary": self.master_commentary,
            "roster_source": self.roster_source,
        }
