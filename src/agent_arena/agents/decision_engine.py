"""
Per-agent decision engine.

Two tiers: a rule tier driven by the technical signal for the agent's
strategy timeframe, and an optional LLM tier consulted for every decision
(llm mode) or only for ambiguous rule decisions (hybrid mode). LLM calls are
paid for out of the session SpendBudget.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from ..config import ArenaSettings
from ..data.market_data import MarketSnapshot
from ..exceptions import AgentDecisionFailure
from .agent_interface import (
    AgentConfig,
    AgentDecision,
    AgentState,
    ArenaAction,
    DecisionMode,
    HealthZone,
    get_health_zone,
)
from .budget import SpendBudget
from .llm_client import LLMClient, estimate_cost, extract_json, worst_case_cost
from .prompts import PromptLibrary, get_prompts, render
from .technical_analysis import MarketSignal, TechnicalAnalyzer

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000
AMBIGUOUS_CONFIDENCE = (30.0, 70.0)
REVERSAL_CONFIDENCE = 75.0
MAX_REASONING_CHARS = 500

DECISION_SCHEMA: Dict[str, Any] = {
    "title": "agent_decision",
    "type": "object",
    "properties": {
        "action": {"type": "string", "enum": [a.value for a in ArenaAction]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 100},
        "size_pct": {"type": "number", "minimum": 0, "maximum": 100},
        "reasoning": {"type": "string"},
    },
    "required": ["action", "confidence", "reasoning"],
}

Notify = Callable[[str], None]


class DecisionEngine:
    """
    Decides one action per round for a single agent.

    The engine holds no financial state; it reads an AgentState snapshot and
    returns an AgentDecision for the AgentRuntime to apply.
    """

    def __init__(
        self,
        agent_id: str,
        config: AgentConfig,
        pair: str,
        leverage: float,
        model_id: str,
        llm: Optional[LLMClient] = None,
        budget: Optional[SpendBudget] = None,
        settings: Optional[ArenaSettings] = None,
        prompts: Optional[PromptLibrary] = None,
    ):
        self.agent_id = agent_id
        self.config = config
        self.strategy = config.strategy
        self.pair = pair
        self.leverage = leverage
        self.model_id = model_id
        self.llm = llm
        self.budget = budget
        self.settings = settings or ArenaSettings()
        self.prompts = prompts or get_prompts()
        self.last_signal: Optional[MarketSignal] = None

    async def decide(
        self,
        state: AgentState,
        market: MarketSnapshot,
        tick: int,
        notify: Optional[Notify] = None,
    ) -> AgentDecision:
        if state.is_dead:
            return AgentDecision.hold("Agent is dead", confidence=0.0)

        signal = self.compute_signal(market)
        self.last_signal = signal
        rule_decision = self.evaluate_rules(state, market, signal)

        if not self._should_consult_llm(rule_decision):
            return rule_decision

        return await self._consult_llm(state, market, tick, signal, rule_decision, notify)

    def compute_signal(self, market: MarketSnapshot) -> MarketSignal:
        closes, highs, lows, volumes = market.series(self.strategy.timeframe)
        return TechnicalAnalyzer.generate_signal(closes, highs, lows, volumes, self.strategy)

    def _should_consult_llm(self, rule_decision: AgentDecision) -> bool:
        if self.llm is None:
            return False
        mode = self.config.decision_mode
        if mode == DecisionMode.LLM:
            return True
        if mode == DecisionMode.HYBRID:
            low, high = AMBIGUOUS_CONFIDENCE
            return rule_decision.action != ArenaAction.HOLD and low <= rule_decision.confidence < high
        return False

    # ------------------------------------------------------------------
    # Rule tier
    # ------------------------------------------------------------------

    def evaluate_rules(self, state: AgentState, market: MarketSnapshot, signal: MarketSignal) -> AgentDecision:
        zone = get_health_zone(state.health)
        if state.has_position:
            return self._position_rules(state, market, signal, zone)
        return self._entry_rules(state, signal, zone)

    def _entry_rules(self, state: AgentState, signal: MarketSignal, zone: HealthZone) -> AgentDecision:
        if signal.direction == "NEUTRAL":
            return AgentDecision.hold(f"Waiting. No edge: {signal.reason}", confidence=signal.confidence)

        threshold = self.strategy.min_entry_confidence
        if zone == HealthZone.CRITICAL:
            threshold = min(90.0, threshold + 20)
        elif zone == HealthZone.DANGER:
            threshold = min(85.0, threshold + 10)

        regime_bonus = self.config.market_regime_preference.get(signal.regime, 0.0) * 10
        confidence = max(0.0, min(100.0, signal.confidence + regime_bonus))

        if confidence < threshold:
            return AgentDecision.hold(
                f"Waiting. {signal.direction} at {confidence:.0f}% (need {threshold:.0f}%)",
                confidence=confidence,
            )

        action = ArenaAction.OPEN_LONG if signal.direction == "LONG" else ArenaAction.OPEN_SHORT
        return AgentDecision(
            action=action,
            reasoning=(
                f"{self.config.name} sees a {signal.direction} signal at {confidence:.0f}% "
                f"in a {signal.regime} market, {signal.reason}"
            ),
            confidence=confidence,
            size_pct=self.margin_percent(confidence, zone),
        )

    def _position_rules(
        self, state: AgentState, market: MarketSnapshot, signal: MarketSignal, zone: HealthZone
    ) -> AgentDecision:
        position = state.position
        hold_hours = max(0.0, (market.timestamp - position.opened_at) / MS_PER_HOUR)
        pnl_percent = position.unrealized_pnl_percent
        max_hours = self.strategy.max_hold_hours

        if hold_hours >= max_hours:
            return AgentDecision(
                action=ArenaAction.CLOSE,
                reasoning=f"Timebox expired ({hold_hours:.1f}h >= {max_hours}h), closing",
                confidence=95.0,
            )

        opposite = "SHORT" if position.side == "long" else "LONG"
        if signal.direction == opposite and signal.confidence >= REVERSAL_CONFIDENCE:
            return AgentDecision(
                action=ArenaAction.CLOSE,
                reasoning=f"Strong reversal: {opposite} at {signal.confidence:.0f}%",
                confidence=85.0,
            )

        if pnl_percent >= self.strategy.take_profit_pct:
            return AgentDecision(
                action=ArenaAction.CLOSE,
                reasoning=f"Take profit hit at {pnl_percent:.1f}%",
                confidence=80.0,
            )

        if pnl_percent > 3 and hold_hours / max_hours > 0.6:
            remaining = max_hours - hold_hours
            return AgentDecision(
                action=ArenaAction.CLOSE,
                reasoning=f"Locking in {pnl_percent:.1f}% with {remaining:.1f}h left on the clock",
                confidence=75.0,
            )

        if (
            pnl_percent < -2
            and position.dca_count < self.strategy.max_dca_count
            and zone not in (HealthZone.CRITICAL, HealthZone.DEATH_ROW)
        ):
            dca_confidence = self._dca_confidence(position.side, pnl_percent, signal)
            if dca_confidence >= 60:
                return AgentDecision(
                    action=ArenaAction.DCA,
                    reasoning=f"Averaging in at {pnl_percent:.1f}%, signal still supports {position.side}",
                    confidence=dca_confidence,
                    size_pct=self.margin_percent(dca_confidence, zone) * 0.5,
                )

        if zone == HealthZone.CRITICAL and pnl_percent < -5:
            return AgentDecision(
                action=ArenaAction.CLOSE,
                reasoning=f"Critical health ({state.health:.0f}%) and {pnl_percent:.1f}% down, cutting losses",
                confidence=85.0,
            )

        return AgentDecision.hold(
            f"Holding {position.side}. P&L {pnl_percent:.1f}% after {hold_hours:.1f}h",
            confidence=50.0,
        )

    @staticmethod
    def _dca_confidence(side: str, pnl_percent: float, signal: MarketSignal) -> float:
        against = "SHORT" if side == "long" else "LONG"
        if pnl_percent >= 0 or signal.direction == against:
            return 0.0
        confidence = 30.0
        if pnl_percent < -3:
            confidence += 15
        if pnl_percent < -5:
            confidence += 15
        if signal.direction == ("LONG" if side == "long" else "SHORT"):
            confidence += 20
        return min(90.0, confidence)

    def margin_percent(self, confidence: float, zone: HealthZone) -> float:
        """Margin percent scaled between the cautious and full size by confidence and health."""
        low = self.strategy.cautious_margin_pct
        high = self.strategy.full_margin_pct
        pct = low + confidence / 100 * (high - low)

        if zone == HealthZone.CAUTION:
            pct *= 0.9
        elif zone == HealthZone.DANGER:
            pct *= 0.7
        elif zone == HealthZone.CRITICAL:
            pct *= 0.5
        elif zone == HealthZone.DEATH_ROW:
            pct = high

        return max(low, min(high, pct))

    # ------------------------------------------------------------------
    # LLM tier
    # ------------------------------------------------------------------

    async def _consult_llm(
        self,
        state: AgentState,
        market: MarketSnapshot,
        tick: int,
        signal: MarketSignal,
        rule_decision: AgentDecision,
        notify: Optional[Notify],
    ) -> AgentDecision:
        system, prompt = self.build_prompts(state, market, tick, signal, rule_decision)
        max_tokens = self.settings.decision_max_tokens

        reservation = None
        if self.budget is not None:
            estimate = worst_case_cost(self.model_id, prompt, max_tokens, system)
            reservation = await self.budget.reserve(self.agent_id, estimate)
            if reservation is None:
                return AgentDecision.hold(
                    "Out of budget, sitting tight",
                    confidence=0.0,
                    budget_limited=True,
                )

        if notify is not None:
            notify("thinking")

        try:
            completion = await self.llm.complete(
                prompt,
                DECISION_SCHEMA,
                model=self.model_id,
                system=system,
                max_tokens=max_tokens,
                temperature=self.settings.decision_temperature,
            )
        except asyncio.CancelledError:
            if reservation is not None:
                await self.budget.release(reservation)
            raise
        except Exception as e:
            if reservation is not None:
                await self.budget.release(reservation)
            raise AgentDecisionFailure(self.agent_id, f"LLM call failed: {e}") from e

        cost = estimate_cost(self.model_id, completion.tokens_in, completion.tokens_out)
        if reservation is not None:
            await self.budget.settle(reservation, cost)

        usage = {
            "used_llm": True,
            "input_tokens": completion.tokens_in,
            "output_tokens": completion.tokens_out,
            "cost_usd": cost,
        }
        parsed = completion.structured or extract_json(completion.text)
        decision = self.sanitize(parsed, state, rule_decision) if parsed else None
        if decision is None:
            logger.warning(f"{self.config.name}: unusable LLM reply, using rule decision")
            return AgentDecision(
                action=rule_decision.action,
                reasoning=f"[LLM fallback] {rule_decision.reasoning}",
                confidence=rule_decision.confidence,
                size_pct=rule_decision.size_pct,
                **usage,
            )

        decision.used_llm = True
        decision.input_tokens = usage["input_tokens"]
        decision.output_tokens = usage["output_tokens"]
        decision.cost_usd = cost
        return decision

    def sanitize(self, raw: Dict[str, Any], state: AgentState, rule_decision: AgentDecision) -> Optional[AgentDecision]:
        """
        Turn a parsed LLM reply into a decision valid for the current position.

        Returns None if the reply names no recognizable action. Actions that
        do not fit the position state become holds.
        """
        action_name = str(raw.get("action", "")).strip().lower()
        if action_name == "wait":
            action_name = ArenaAction.HOLD.value
        try:
            action = ArenaAction(action_name)
        except ValueError:
            return None

        try:
            confidence = float(raw.get("confidence", rule_decision.confidence))
        except (TypeError, ValueError):
            confidence = rule_decision.confidence
        confidence = max(0.0, min(100.0, confidence))

        reasoning = str(raw.get("reasoning") or "").strip()[:MAX_REASONING_CHARS] or rule_decision.reasoning

        if action in (ArenaAction.OPEN_LONG, ArenaAction.OPEN_SHORT) and state.has_position:
            return AgentDecision.hold(f"Already positioned. {reasoning}", confidence=confidence)
        if action in (ArenaAction.DCA, ArenaAction.CLOSE) and not state.has_position:
            return AgentDecision.hold(f"Nothing to {action.value}. {reasoning}", confidence=confidence)
        if action == ArenaAction.DCA and state.position.dca_count >= self.strategy.max_dca_count:
            return AgentDecision.hold(f"DCA limit reached. {reasoning}", confidence=confidence)

        size_pct = 0.0
        if action in (ArenaAction.OPEN_LONG, ArenaAction.OPEN_SHORT, ArenaAction.DCA):
            default = rule_decision.size_pct or self.strategy.cautious_margin_pct
            try:
                size_pct = float(raw.get("size_pct", default))
            except (TypeError, ValueError):
                size_pct = default
            size_pct = max(self.settings.min_size_pct, min(self.settings.max_size_pct, size_pct))

        return AgentDecision(action=action, reasoning=reasoning, confidence=confidence, size_pct=size_pct)

    def build_prompts(
        self,
        state: AgentState,
        market: MarketSnapshot,
        tick: int,
        signal: MarketSignal,
        rule_decision: AgentDecision,
    ):
        """System and user prompt for one decision."""
        if state.has_position:
            p = state.position
            position = (
                f"{p.side} {p.volume:.4f} @ {p.avg_entry_price:.5f}, P&L {p.unrealized_pnl_percent:+.1f}%, "
                f"liquidation {p.liquidation_price:.5f}, DCA {p.dca_count}/{self.strategy.max_dca_count}"
            )
        else:
            position = "none"

        variables = {
            "name": self.config.name,
            "pair": self.pair,
            "personality": self.config.personality,
            "philosophy": self.config.trading_philosophy,
            "leverage": f"{self.leverage:g}",
            "tick": tick,
            "price": f"{market.price:.5f}",
            "timeframe": self.strategy.timeframe,
            "signal_direction": signal.direction,
            "signal_confidence": f"{signal.confidence:.0f}",
            "regime": signal.regime,
            "analysis": TechnicalAnalyzer.format_analysis_text(self.pair, market.price, signal.indicators),
            "balance": f"{state.balance:.2f}",
            "equity": f"{state.equity:.2f}",
            "health": f"{state.health:.0f}",
            "health_zone": state.health_zone.value,
            "rank": state.rank or "-",
            "position": position,
            "rule_action": rule_decision.action.value,
            "rule_confidence": f"{rule_decision.confidence:.0f}",
            "rule_reasoning": rule_decision.reasoning,
        }
        system = render(self.prompts.template("agent_decision.system"), variables)
        prompt = render(self.prompts.template("agent_decision.user"), variables)
        return system, prompt
