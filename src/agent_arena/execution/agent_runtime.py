"""
Per-agent financial runtime.

Owns one agent's balance, open position, fees, liquidation and health. All
state transitions are synchronous and computed into locals before being
committed, so an action is applied either completely or not at all.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from typing import List, Optional

from ..agents.agent_interface import (
    AgentConfig,
    AgentDecision,
    AgentState,
    ArenaAction,
    ClosedPosition,
    DcaEntry,
    HealthZone,
    Position,
    get_health_zone,
)
from ..config import ArenaSettings

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000


@dataclass(frozen=True)
class FeeSchedule:
    taker_rate: float = 0.0026
    margin_open_rate: float = 0.0002
    rollover_rate: float = 0.0002
    rollover_period_hours: float = 4.0

    @classmethod
    def from_settings(cls, settings: ArenaSettings) -> 'FeeSchedule':
        return cls(
            taker_rate=settings.taker_fee_rate,
            margin_open_rate=settings.margin_open_fee_rate,
            rollover_rate=settings.rollover_fee_rate,
            rollover_period_hours=settings.rollover_period_hours,
        )

    @property
    def open_rate(self) -> float:
        return self.taker_rate + self.margin_open_rate


@dataclass
class TradeResult:
    """Outcome of applying an action or a forced liquidation."""
    kind: str  # open, dca, close, liquidation, noop
    side: Optional[str] = None
    price: float = 0.0
    size_pct: float = 0.0
    margin: float = 0.0
    volume: float = 0.0
    realized_pnl: float = 0.0
    pnl_percent: float = 0.0
    fees: float = 0.0
    won: bool = False
    entry_price: float = 0.0
    hold_ms: int = 0
    died: bool = False
    note: str = ""
    position: Optional[Position] = None

    @property
    def is_noop(self) -> bool:
        return self.kind == "noop"


def liquidation_price(side: str, entry_price: float, leverage: float, maintenance: float) -> float:
    """Price at which remaining margin falls to the maintenance requirement."""
    if side == "long":
        return entry_price * (1 - 1 / leverage + maintenance)
    return entry_price * (1 + 1 / leverage - maintenance)


def raw_pnl(side: str, entry_price: float, price: float, volume: float) -> float:
    if side == "long":
        return (price - entry_price) * volume
    return (entry_price - price) * volume


class AgentRuntime:
    """
    Financial model for a single arena agent.

    Applies open, DCA and close actions, marks the position to market,
    force-liquidates when the liquidation price is crossed and tracks health.
    """

    def __init__(
        self,
        agent_id: str,
        config: AgentConfig,
        starting_capital: float,
        leverage: float,
        pair: str,
        registration_index: int,
        settings: Optional[ArenaSettings] = None,
        state: Optional[AgentState] = None,
        closed_positions: Optional[List[ClosedPosition]] = None,
    ):
        self.agent_id = agent_id
        self.config = config
        self.leverage = leverage
        self.pair = pair
        self.settings = settings or ArenaSettings()
        self.fees = FeeSchedule.from_settings(self.settings)
        self.logger = logging.getLogger(f"runtime.{config.name}")
        self.state = state or AgentState(
            agent_id=agent_id,
            name=config.name,
            archetype_id=config.archetype_id,
            registration_index=registration_index,
            starting_capital=starting_capital,
            balance=starting_capital,
            equity=starting_capital,
            peak_equity=starting_capital,
            avatar_shape=config.avatar_shape,
            color_index=config.color_index,
        )
        self.closed_positions: List[ClosedPosition] = list(closed_positions or [])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_dead(self) -> bool:
        return self.state.is_dead

    def snapshot(self) -> AgentState:
        return self.state.copy()

    def accrued_rollover(self, position: Position, now_ms: float) -> float:
        held_hours = max(0.0, (now_ms - position.opened_at) / MS_PER_HOUR)
        periods = math.floor(held_hours / self.fees.rollover_period_hours)
        return position.entry_notional * self.fees.rollover_rate * periods

    def _max_margin(self, balance: float) -> float:
        return balance / (1 + self.leverage * self.fees.open_rate)

    # ------------------------------------------------------------------
    # Mark-to-market and liquidation
    # ------------------------------------------------------------------

    def mark_to_market(self, price: float, now_ms: float):
        """Revalue the open position and refresh equity, drawdown and health."""
        if self.state.is_dead:
            return

        position = self.state.position
        if position is not None and position.is_open:
            rollover = self.accrued_rollover(position, now_ms)
            unrealized = raw_pnl(position.side, position.avg_entry_price, price, position.volume) - rollover
            position.unrealized_pnl = unrealized
            if position.margin_used > 0:
                position.unrealized_pnl_percent = (
                    (unrealized - position.total_fees) / position.margin_used * 100
                )
            position.worst_pnl_percent = min(position.worst_pnl_percent, position.unrealized_pnl_percent)
            equity = self.state.balance + position.margin_used + unrealized
        else:
            equity = self.state.balance

        self._commit_equity(equity)

    def check_liquidation(self, price: float, tick: int, now_ms: float) -> Optional[TradeResult]:
        """
        Force-close the position if the price crossed its liquidation price.

        The position closes at the liquidation price and the whole margin is
        forfeited; the balance is left unchanged.
        """
        position = self.state.position
        if self.state.is_dead or position is None or not position.is_open:
            return None

        crossed = (
            price <= position.liquidation_price
            if position.side == "long"
            else price >= position.liquidation_price
        )
        if not crossed:
            return None

        realized = -position.margin_used - position.total_fees
        equity = self.state.balance
        result = TradeResult(
            kind="liquidation",
            side=position.side,
            price=position.liquidation_price,
            margin=position.margin_used,
            volume=position.volume,
            realized_pnl=realized,
            pnl_percent=realized / position.margin_used * 100 if position.margin_used else -100.0,
            entry_price=position.avg_entry_price,
            hold_ms=int(now_ms - position.opened_at),
            position=self._closed_copy(position),
        )

        self.state.position = None
        self.state.loss_count += 1
        self.state.trade_count += 1
        self.state.liquidation_count += 1
        self.state.total_pnl += realized
        self.state.last_trade_at = now_ms
        self._commit_equity(equity)
        self._record_closed(
            position, "liquidation", position.liquidation_price, now_ms, realized,
            f"Liquidated at {position.liquidation_price:.5f}",
        )

        self.logger.warning(
            f"Liquidated {position.side} at {position.liquidation_price:.5f} "
            f"(price {price:.5f}), forfeited margin {position.margin_used:.2f}"
        )

        if self.settings.fatal_liquidation or equity <= self.settings.dust_threshold:
            self.mark_dead(
                "liquidated",
                f"Liquidated at {position.liquidation_price:.5f}",
                tick,
            )
            result.died = True
        return result

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def apply(self, decision: AgentDecision, price: float, tick: int, now_ms: float) -> TradeResult:
        """Apply one decision at the round price. Invalid actions are no-ops."""
        if self.state.is_dead:
            return TradeResult(kind="noop", note="agent is dead")

        action = decision.action
        if action in (ArenaAction.OPEN_LONG, ArenaAction.OPEN_SHORT):
            side = "long" if action == ArenaAction.OPEN_LONG else "short"
            result = self._open(side, decision.size_pct, price, now_ms, decision.reasoning)
        elif action == ArenaAction.DCA:
            result = self._dca(decision.size_pct, price, now_ms)
        elif action == ArenaAction.CLOSE:
            result = self.close_position(price, now_ms, decision.reasoning)
        else:
            result = TradeResult(kind="noop", note="hold")

        self._check_bankruptcy(tick)
        if self.state.is_dead:
            result.died = True
        return result

    def _open(self, side: str, size_pct: float, price: float, now_ms: float, reasoning: str) -> TradeResult:
        if self.state.has_position:
            return TradeResult(kind="noop", note="position already open")
        if price <= 0:
            return TradeResult(kind="noop", note="no valid price")

        size_pct = max(self.settings.min_size_pct, min(self.settings.max_size_pct, size_pct))
        balance = self.state.balance
        margin = min(balance * size_pct / 100, self._max_margin(balance))
        if margin < self.settings.min_margin:
            return TradeResult(kind="noop", note="insufficient balance")

        notional = margin * self.leverage
        volume = notional / price
        fee = notional * self.fees.open_rate
        liq_price = liquidation_price(side, price, self.leverage, self.settings.maintenance_margin_rate)

        position = Position(
            id=uuid.uuid4().hex[:12],
            pair=self.pair,
            side=side,
            volume=volume,
            avg_entry_price=price,
            leverage=self.leverage,
            margin_used=margin,
            liquidation_price=liq_price,
            opened_at=now_ms,
            total_fees=fee,
            entry_reasoning=reasoning,
        )

        self.state.balance = balance - margin - fee
        self.state.position = position
        self.state.total_fees += fee
        self.state.last_trade_at = now_ms
        self.mark_to_market(price, now_ms)

        self.logger.info(
            f"Opened {side} {volume:.4f} @ {price:.5f} margin={margin:.2f} "
            f"lev={self.leverage}x liq={liq_price:.5f}"
        )
        return TradeResult(
            kind="open",
            side=side,
            price=price,
            size_pct=size_pct,
            margin=margin,
            volume=volume,
            fees=fee,
            entry_price=price,
            position=self._closed_copy(position, keep_open=True),
        )

    def _dca(self, size_pct: float, price: float, now_ms: float) -> TradeResult:
        position = self.state.position
        if position is None or not position.is_open:
            return TradeResult(kind="noop", note="no position to add to")
        if position.dca_count >= self.config.strategy.max_dca_count:
            return TradeResult(kind="noop", note="DCA limit reached")

        size_pct = max(self.settings.min_size_pct, min(self.settings.max_size_pct, size_pct))
        balance = self.state.balance
        margin = min(balance * size_pct / 100, self._max_margin(balance))
        if margin < self.settings.min_margin:
            return TradeResult(kind="noop", note="insufficient balance")

        notional = margin * self.leverage
        added_volume = notional / price
        fee = notional * self.fees.open_rate
        total_volume = position.volume + added_volume
        avg_entry = (position.avg_entry_price * position.volume + price * added_volume) / total_volume
        liq_price = liquidation_price(
            position.side, avg_entry, self.leverage, self.settings.maintenance_margin_rate
        )

        position.volume = total_volume
        position.avg_entry_price = avg_entry
        position.margin_used += margin
        position.total_fees += fee
        position.liquidation_price = liq_price
        position.dca_count += 1
        position.dca_entries.append(DcaEntry(price=price, volume=added_volume, margin=margin, timestamp=now_ms))
        self.state.balance = balance - margin - fee
        self.state.total_fees += fee
        self.state.last_trade_at = now_ms
        self.mark_to_market(price, now_ms)

        self.logger.info(
            f"DCA #{position.dca_count} {position.side} +{added_volume:.4f} @ {price:.5f}, "
            f"avg entry {avg_entry:.5f}"
        )
        return TradeResult(
            kind="dca",
            side=position.side,
            price=price,
            size_pct=size_pct,
            margin=margin,
            volume=added_volume,
            fees=fee,
            entry_price=avg_entry,
            position=self._closed_copy(position, keep_open=True),
        )

    def close_position(self, price: float, now_ms: float, reasoning: str = "") -> TradeResult:
        """Close the open position at ``price``, realizing P&L net of all fees."""
        position = self.state.position
        if position is None or not position.is_open:
            return TradeResult(kind="noop", note="no position to close")

        raw = raw_pnl(position.side, position.avg_entry_price, price, position.volume)
        close_fee = position.volume * price * self.fees.taker_rate
        rollover = self.accrued_rollover(position, now_ms)
        realized = raw - close_fee - rollover - position.total_fees
        won = realized > 0

        self.state.balance = self.state.balance + position.margin_used + raw - close_fee - rollover
        self.state.position = None
        self.state.total_fees += close_fee + rollover
        self.state.total_pnl += realized
        self.state.trade_count += 1
        if won:
            self.state.win_count += 1
        else:
            self.state.loss_count += 1
        self.state.last_trade_at = now_ms
        self._commit_equity(self.state.balance)
        self._record_closed(position, "close", price, now_ms, realized, reasoning, close_fee + rollover)

        self.logger.info(
            f"Closed {position.side} @ {price:.5f} pnl={realized:+.2f} "
            f"({'win' if won else 'loss'})"
        )
        return TradeResult(
            kind="close",
            side=position.side,
            price=price,
            margin=position.margin_used,
            volume=position.volume,
            realized_pnl=realized,
            pnl_percent=realized / position.margin_used * 100 if position.margin_used else 0.0,
            fees=close_fee + rollover,
            won=won,
            entry_price=position.avg_entry_price,
            hold_ms=int(now_ms - position.opened_at),
            position=self._closed_copy(position),
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def record_decision(self, decision: AgentDecision, now_ms: float):
        """Track LLM usage and the latest reasoning shown to observers."""
        if decision.used_llm:
            self.state.llm_call_count += 1
            self.state.total_input_tokens += decision.input_tokens
            self.state.total_output_tokens += decision.output_tokens
            self.state.estimated_cost_usd += decision.cost_usd
        if decision.budget_limited:
            self.state.budget_limited = True
        self.state.last_thought = decision.reasoning
        self.state.last_thought_at = now_ms
        self.state.activity = "holding" if self.state.has_position else "waiting"

    def record_failure(self):
        self.state.failed_decisions += 1

    def award_badge(self, badge_id: str) -> bool:
        if badge_id in self.state.badges:
            return False
        self.state.badges.append(badge_id)
        return True

    def set_rank(self, rank: int):
        self.state.rank = rank

    def mark_dead(self, status: str, reason: str, tick: int):
        self.state.is_dead = True
        self.state.status = status
        self.state.death_reason = reason
        self.state.death_tick = tick
        self.state.health = 0.0
        self.state.health_zone = HealthZone.DEAD
        self.state.activity = "dead"
        self.logger.warning(f"Agent {self.config.name} is out: {reason}")

    def _check_bankruptcy(self, tick: int):
        if self.state.is_dead or self.state.has_position:
            return
        if self.state.balance <= self.settings.dust_threshold:
            self.mark_dead("bankrupt", "Balance exhausted", tick)

    def _commit_equity(self, equity: float):
        state = self.state
        state.equity = equity
        if equity > state.peak_equity:
            state.peak_equity = equity
        drawdown = (state.peak_equity - equity) / state.peak_equity * 100 if state.peak_equity > 0 else 0.0
        state.max_drawdown = max(state.max_drawdown, drawdown)

        if state.is_dead:
            return
        base = equity / state.starting_capital * 100 if state.starting_capital > 0 else 0.0
        health = base - self.settings.health_drawdown_weight * drawdown
        state.health = max(0.0, min(100.0, health))
        zone = get_health_zone(state.health)
        # alive with nothing left to lose still trades until bankrupt
        state.health_zone = HealthZone.DEATH_ROW if zone == HealthZone.DEAD else zone

    def _record_closed(
        self,
        position: Position,
        exit_kind: str,
        exit_price: float,
        now_ms: float,
        realized: float,
        reasoning: str,
        exit_fees: float = 0.0,
    ):
        self.closed_positions.append(ClosedPosition(
            id=position.id,
            pair=position.pair,
            side=position.side,
            exit_kind=exit_kind,
            volume=position.volume,
            entry_price=position.avg_entry_price,
            exit_price=exit_price,
            leverage=position.leverage,
            margin_used=position.margin_used,
            opened_at=position.opened_at,
            closed_at=now_ms,
            realized_pnl=realized,
            pnl_percent=realized / position.margin_used * 100 if position.margin_used else 0.0,
            total_fees=position.total_fees + exit_fees,
            worst_pnl_percent=position.worst_pnl_percent,
            dca_count=position.dca_count,
            dca_entries=list(position.dca_entries),
            entry_reasoning=position.entry_reasoning,
            exit_reasoning=reasoning,
        ))

    @staticmethod
    def _closed_copy(position: Position, keep_open: bool = False) -> Position:
        copied = Position(**{**position.__dict__, "dca_entries": list(position.dca_entries)})
        copied.is_open = keep_open
        return copied
