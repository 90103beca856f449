"""
Core agent types shared by the runtime, decision engine and roster generator.

An agent is described by an immutable AgentConfig produced before the session
starts, and carries a mutable AgentState that only the AgentRuntime changes.
"""

import copy
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple, Any


class ArenaAction(str, Enum):
    HOLD = "hold"
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    DCA = "dca"
    CLOSE = "close"


class DecisionMode(str, Enum):
    RULES = "rules"
    LLM = "llm"
    HYBRID = "hybrid"


class HealthZone(str, Enum):
    SAFE = "safe"
    CAUTION = "caution"
    DANGER = "danger"
    CRITICAL = "critical"
    DEATH_ROW = "death_row"
    DEAD = "dead"


REGIMES = ("trending", "ranging", "volatile")
TIMEFRAMES = ("5m", "15m", "1h", "4h")
AVATAR_SHAPES = ("hexagon", "diamond", "circle", "triangle", "square", "pentagon", "octagon", "star")
COMMENTARY_TRIGGERS = (
    "on_entry", "on_exit_profit", "on_exit_loss", "on_dca", "on_death",
    "on_rival_death", "on_near_death", "on_comeback", "on_hot_streak",
    "on_face_off", "on_lead_change", "on_badge", "on_milestone",
)
SIGNAL_COMPONENTS = ("trend", "momentum", "rsi", "bollinger", "volume")


def get_health_zone(health: float) -> HealthZone:
    if health <= 0:
        return HealthZone.DEAD
    if health <= 20:
        return HealthZone.DEATH_ROW
    if health <= 40:
        return HealthZone.CRITICAL
    if health <= 60:
        return HealthZone.DANGER
    if health <= 80:
        return HealthZone.CAUTION
    return HealthZone.SAFE


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class StrategyParams:
    """Numeric trading parameters for one agent."""
    timeframe: str = "15m"
    min_entry_confidence: float = 60.0
    cautious_margin_pct: float = 8.0
    full_margin_pct: float = 12.0
    max_dca_count: int = 1
    max_hold_hours: float = 4.0
    take_profit_pct: float = 5.0
    oversold_rsi: float = 30.0
    overbought_rsi: float = 70.0
    volume_spike_ratio: float = 1.5
    signal_weights: Dict[str, float] = field(default_factory=lambda: {
        "trend": 1.0, "momentum": 1.0, "rsi": 1.0, "bollinger": 1.0, "volume": 0.5,
    })
    contrarian: bool = False

    @classmethod
    def from_raw(
        cls,
        raw: Dict[str, Any],
        session_hours: float = 24.0,
        max_size_pct: float = 20.0,
    ) -> Tuple['StrategyParams', List[str], List[str]]:
        """
        Build parameters from untrusted input, clamping every value into a safe range.

        Returns:
            Tuple of (params, errors, warnings). Errors are values that could not
            be used at all and were replaced by defaults; warnings are clamps.
        """
        errors: List[str] = []
        warnings: List[str] = []
        defaults = cls()

        def number(key: str, low: float, high: float) -> float:
            default = getattr(defaults, key)
            value = raw.get(key, default)
            try:
                value = float(value)
            except (TypeError, ValueError):
                errors.append(f"{key}: not a number ({value!r})")
                return default
            clamped = _clamp(value, low, high)
            if clamped != value:
                warnings.append(f"{key}: clamped {value} to {clamped}")
            return clamped

        timeframe = raw.get("timeframe", defaults.timeframe)
        if timeframe not in TIMEFRAMES:
            errors.append(f"timeframe: unsupported {timeframe!r}")
            timeframe = defaults.timeframe

        cautious = number("cautious_margin_pct", 1.0, max_size_pct)
        full = number("full_margin_pct", 1.0, max_size_pct)
        if full < cautious:
            warnings.append("full_margin_pct below cautious_margin_pct, swapped")
            cautious, full = full, cautious

        oversold = number("oversold_rsi", 5.0, 45.0)
        overbought = number("overbought_rsi", 55.0, 95.0)

        weights = dict(defaults.signal_weights)
        raw_weights = raw.get("signal_weights") or {}
        if isinstance(raw_weights, dict):
            for name, weight in raw_weights.items():
                if name not in SIGNAL_COMPONENTS:
                    warnings.append(f"signal_weights: unknown component {name!r} ignored")
                    continue
                try:
                    weights[name] = _clamp(float(weight), 0.0, 3.0)
                except (TypeError, ValueError):
                    errors.append(f"signal_weights.{name}: not a number")
        if sum(weights.values()) <= 0:
            errors.append("signal_weights: all zero, using defaults")
            weights = dict(defaults.signal_weights)

        params = cls(
            timeframe=timeframe,
            min_entry_confidence=number("min_entry_confidence", 40.0, 85.0),
            cautious_margin_pct=cautious,
            full_margin_pct=full,
            max_dca_count=int(number("max_dca_count", 0, 3)),
            max_hold_hours=number("max_hold_hours", 0.25, max(0.25, session_hours)),
            take_profit_pct=number("take_profit_pct", 1.0, 50.0),
            oversold_rsi=oversold,
            overbought_rsi=overbought,
            volume_spike_ratio=number("volume_spike_ratio", 1.1, 5.0),
            signal_weights=weights,
            contrarian=bool(raw.get("contrarian", defaults.contrarian)),
        )
        return params, errors, warnings


@dataclass(frozen=True)
class AgentConfig:
    """Persona and strategy for one agent, fixed for the whole session."""
    name: str
    personality: str
    archetype_id: str
    avatar_shape: str = "hexagon"
    color_index: int = 0
    trading_philosophy: str = ""
    market_regime_preference: Dict[str, float] = field(
        default_factory=lambda: {"trending": 0.0, "ranging": 0.0, "volatile": 0.0}
    )
    primary_indicators: Tuple[str, ...] = ()
    commentary_templates: Dict[str, List[str]] = field(default_factory=dict)
    decision_mode: DecisionMode = DecisionMode.HYBRID
    strategy: StrategyParams = field(default_factory=StrategyParams)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["decision_mode"] = self.decision_mode.value
        data["primary_indicators"] = list(self.primary_indicators)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentConfig':
        data = dict(data)
        data["decision_mode"] = DecisionMode(data.get("decision_mode", DecisionMode.HYBRID.value))
        data["primary_indicators"] = tuple(data.get("primary_indicators") or ())
        data["strategy"] = StrategyParams(**(data.get("strategy") or {}))
        return cls(**data)


@dataclass
class DcaEntry:
    price: float
    volume: float
    margin: float
    timestamp: float


@dataclass
class Position:
    id: str
    pair: str
    side: str  # long, short
    volume: float
    avg_entry_price: float
    leverage: float
    margin_used: float
    liquidation_price: float
    opened_at: float
    total_fees: float = 0.0
    dca_count: int = 0
    dca_entries: List[DcaEntry] = field(default_factory=list)
    is_open: bool = True
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    worst_pnl_percent: float = 0.0
    entry_reasoning: str = ""

    @property
    def entry_notional(self) -> float:
        return self.volume * self.avg_entry_price


@dataclass
class ClosedPosition:
    """A finished trade: how it was built up and why it was entered and left."""
    id: str
    pair: str
    side: str
    exit_kind: str  # close, liquidation
    volume: float
    entry_price: float
    exit_price: float
    leverage: float
    margin_used: float
    opened_at: float
    closed_at: float
    realized_pnl: float
    pnl_percent: float
    total_fees: float = 0.0
    worst_pnl_percent: float = 0.0
    dca_count: int = 0
    dca_entries: List[DcaEntry] = field(default_factory=list)
    entry_reasoning: str = ""
    exit_reasoning: str = ""

    @property
    def won(self) -> bool:
        return self.realized_pnl > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["won"] = self.won
        data["hold_ms"] = self.closed_at - self.opened_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClosedPosition':
        data = dict(data)
        data.pop("won", None)
        data.pop("hold_ms", None)
        data["dca_entries"] = [DcaEntry(**entry) for entry in data.get("dca_entries", [])]
        return cls(**data)


@dataclass
class AgentState:
    """
    Financial snapshot of one agent.

    Money fields are in the quote currency of the session pair. Only
    AgentRuntime mutates them; everyone else reads copies.
    """
    agent_id: str
    name: str
    archetype_id: str
    registration_index: int
    starting_capital: float
    balance: float
    equity: float
    peak_equity: float
    avatar_shape: str = "hexagon"
    color_index: int = 0
    max_drawdown: float = 0.0
    health: float = 100.0
    health_zone: HealthZone = HealthZone.SAFE
    rank: int = 0
    status: str = "alive"  # alive, liquidated, bankrupt
    is_dead: bool = False
    death_tick: Optional[int] = None
    death_reason: Optional[str] = None
    win_count: int = 0
    loss_count: int = 0
    trade_count: int = 0
    liquidation_count: int = 0
    total_pnl: float = 0.0
    total_fees: float = 0.0
    llm_call_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    failed_decisions: int = 0
    budget_limited: bool = False
    badges: List[str] = field(default_factory=list)
    activity: str = "waiting"
    last_thought: str = ""
    last_thought_at: Optional[float] = None
    last_trade_at: Optional[float] = None
    position: Optional[Position] = None

    @property
    def has_position(self) -> bool:
        return self.position is not None and self.position.is_open

    @property
    def win_rate(self) -> float:
        closed = self.win_count + self.loss_count
        return self.win_count / closed if closed else 0.0

    @property
    def pnl_percent(self) -> float:
        if self.starting_capital <= 0:
            return 0.0
        return (self.equity - self.starting_capital) / self.starting_capital * 100

    def copy(self) -> 'AgentState':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["health_zone"] = self.health_zone.value
        data["has_position"] = self.has_position
        data["win_rate"] = self.win_rate
        data["pnl_percent"] = self.pnl_percent
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentState':
        data = dict(data)
        for derived in ("has_position", "win_rate", "pnl_percent"):
            data.pop(derived, None)
        data["health_zone"] = HealthZone(data.get("health_zone", HealthZone.SAFE.value))
        position = data.get("position")
        if position:
            position = dict(position)
            position["dca_entries"] = [DcaEntry(**entry) for entry in position.get("dca_entries", [])]
            data["position"] = Position(**position)
        return cls(**data)


@dataclass
class AgentDecision:
    """One round's decision for one agent, with the LLM usage it cost."""
    action: ArenaAction
    reasoning: str
    confidence: float = 0.0
    size_pct: float = 0.0
    used_llm: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    budget_limited: bool = False

    @classmethod
    def hold(cls, reasoning: str, confidence: float = 50.0, **kwargs) -> 'AgentDecision':
        return cls(action=ArenaAction.HOLD, reasoning=reasoning, confidence=confidence, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data
