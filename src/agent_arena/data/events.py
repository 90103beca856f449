"""
Arena event model.

Every event is an immutable ArenaEvent whose payload type is fixed by its
EventType. ``create_event`` enforces the pairing so consumers can rely on the
payload shape for a given type.
"""

import time
import uuid
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class EventType(str, Enum):
    TICK = "tick"
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_ENDED = "session_ended"
    SESSION_COUNTDOWN = "session_countdown"
    ROSTER_REVEAL = "roster_reveal"
    TRADE_OPEN = "trade_open"
    TRADE_DCA = "trade_dca"
    TRADE_CLOSE = "trade_close"
    AGENT_DEATH = "agent_death"
    BADGE_EARNED = "badge_earned"
    FACE_OFF = "face_off"
    LEAD_CHANGE = "lead_change"
    NEAR_DEATH = "near_death"
    HOT_STREAK = "hot_streak"
    COMEBACK = "comeback"
    MARKET_SHOCK = "market_shock"
    MILESTONE = "milestone"
    AGENT_HOLD = "agent_hold"
    AGENT_WAIT = "agent_wait"
    AGENT_THINKING = "agent_thinking"
    AGENT_ERROR = "agent_error"
    BUDGET_WARNING = "budget_warning"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FEED_STALE = "feed_stale"


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


LIFECYCLE_EVENTS = frozenset({
    EventType.SESSION_STARTED,
    EventType.SESSION_PAUSED,
    EventType.SESSION_RESUMED,
    EventType.SESSION_ENDED,
})


@dataclass(frozen=True)
class TickPayload:
    tick: int
    elapsed_ms: int
    price_stale: bool
    agents: Tuple[Dict[str, Any], ...]
    rankings: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class SessionStatusPayload:
    session_id: str
    status: str
    tick: int = 0
    elapsed_ms: int = 0


@dataclass(frozen=True)
class SessionEndedPayload:
    session_id: str
    end_reason: str
    summary: Dict[str, Any]


@dataclass(frozen=True)
class CountdownPayload:
    remaining_ms: int
    label: str


@dataclass(frozen=True)
class RosterRevealPayload:
    theme: str
    master_commentary: str
    source: str
    agent_names: Tuple[str, ...]
    fallback_reason: Optional[str] = None


@dataclass(frozen=True)
class TradeOpenPayload:
    side: str
    size_pct: float
    margin: float
    volume: float
    entry_price: float
    leverage: float
    liquidation_price: float
    fees: float
    reasoning: str = ""


@dataclass(frozen=True)
class TradeDcaPayload:
    side: str
    dca_count: int
    added_volume: float
    avg_entry_price: float
    margin_used: float
    liquidation_price: float
    fees: float


@dataclass(frozen=True)
class TradeClosePayload:
    side: str
    entry_price: float
    exit_price: float
    realized_pnl: float
    pnl_percent: float
    fees: float
    won: bool
    liquidation: bool
    hold_ms: int


@dataclass(frozen=True)
class AgentDeathPayload:
    status: str
    reason: str
    death_tick: int
    final_equity: float


@dataclass(frozen=True)
class BadgePayload:
    badge_id: str
    badge_name: str
    rarity: str


@dataclass(frozen=True)
class FaceOffPayload:
    agent1_id: str
    agent1_name: str
    side1: str
    agent2_id: str
    agent2_name: str
    side2: str


@dataclass(frozen=True)
class LeadChangePayload:
    new_leader_id: str
    new_leader_name: str
    old_leader_id: Optional[str]
    old_leader_name: Optional[str]
    pnl_percent: float


@dataclass(frozen=True)
class NearDeathPayload:
    health: float


@dataclass(frozen=True)
class HotStreakPayload:
    streak: int


@dataclass(frozen=True)
class ComebackPayload:
    lowest_health: float
    current_health: float


@dataclass(frozen=True)
class MarketShockPayload:
    previous_price: float
    change_pct: float


@dataclass(frozen=True)
class MilestonePayload:
    threshold_pct: float
    return_pct: float


@dataclass(frozen=True)
class AgentActivityPayload:
    action: str
    activity: str
    confidence: float = 0.0
    used_llm: bool = False
    budget_limited: bool = False
    balance: float = 0.0
    health: float = 0.0


@dataclass(frozen=True)
class AgentErrorPayload:
    error: str
    failed_decisions: int


@dataclass(frozen=True)
class BudgetPayload:
    scope: str  # session, agent
    spent_usd: float
    limit_usd: float


@dataclass(frozen=True)
class FeedStalePayload:
    last_price: float
    error: str


EventPayload = Union[
    TickPayload, SessionStatusPayload, SessionEndedPayload, CountdownPayload,
    RosterRevealPayload, TradeOpenPayload, TradeDcaPayload, TradeClosePayload,
    AgentDeathPayload, BadgePayload, FaceOffPayload, LeadChangePayload,
    NearDeathPayload, HotStreakPayload, ComebackPayload, MarketShockPayload,
    MilestonePayload, AgentActivityPayload, AgentErrorPayload, BudgetPayload,
    FeedStalePayload,
]

PAYLOAD_TYPES: Dict[EventType, type] = {
    EventType.TICK: TickPayload,
    EventType.SESSION_STARTED: SessionStatusPayload,
    EventType.SESSION_PAUSED: SessionStatusPayload,
    EventType.SESSION_RESUMED: SessionStatusPayload,
    EventType.SESSION_ENDED: SessionEndedPayload,
    EventType.SESSION_COUNTDOWN: CountdownPayload,
    EventType.ROSTER_REVEAL: RosterRevealPayload,
    EventType.TRADE_OPEN: TradeOpenPayload,
    EventType.TRADE_DCA: TradeDcaPayload,
    EventType.TRADE_CLOSE: TradeClosePayload,
    EventType.AGENT_DEATH: AgentDeathPayload,
    EventType.BADGE_EARNED: BadgePayload,
    EventType.FACE_OFF: FaceOffPayload,
    EventType.LEAD_CHANGE: LeadChangePayload,
    EventType.NEAR_DEATH: NearDeathPayload,
    EventType.HOT_STREAK: HotStreakPayload,
    EventType.COMEBACK: ComebackPayload,
    EventType.MARKET_SHOCK: MarketShockPayload,
    EventType.MILESTONE: MilestonePayload,
    EventType.AGENT_HOLD: AgentActivityPayload,
    EventType.AGENT_WAIT: AgentActivityPayload,
    EventType.AGENT_THINKING: AgentActivityPayload,
    EventType.AGENT_ERROR: AgentErrorPayload,
    EventType.BUDGET_WARNING: BudgetPayload,
    EventType.BUDGET_EXHAUSTED: BudgetPayload,
    EventType.FEED_STALE: FeedStalePayload,
}


@dataclass(frozen=True)
class ArenaEvent:
    id: str
    type: EventType
    importance: Importance
    title: str
    detail: str
    price_at: float
    timestamp: float
    payload: EventPayload
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    commentary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "importance": self.importance.value,
            "title": self.title,
            "detail": self.detail,
            "price_at": self.price_at,
            "timestamp": self.timestamp,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "commentary": self.commentary,
            "payload": asdict(self.payload),
        }


def create_event(
    event_type: EventType,
    payload: EventPayload,
    *,
    title: str,
    detail: str = "",
    price_at: float = 0.0,
    importance: Importance = Importance.MEDIUM,
    agent_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    timestamp: Optional[float] = None,
    commentary: str = "",
) -> ArenaEvent:
    """
    Build an event, rejecting payloads that do not match the event type.

    Raises:
        TypeError: If the payload is not the type registered for ``event_type``
    """
    expected = PAYLOAD_TYPES[event_type]
    if not isinstance(payload, expected):
        raise TypeError(
            f"{event_type.value} events carry {expected.__name__}, got {type(payload).__name__}"
        )
    return ArenaEvent(
        id=uuid.uuid4().hex[:12],
        type=event_type,
        importance=importance,
        title=title,
        detail=detail,
        price_at=price_at,
        timestamp=timestamp if timestamp is not None else time.time() * 1000,
        payload=payload,
        agent_id=agent_id,
        agent_name=agent_name,
        commentary=commentary,
    )
