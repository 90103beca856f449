"""
Session orchestration for the Agent Arena.

The SessionManager owns the single active session: its agents' runtimes and
decision engines, the spend budget, the tick scheduler and the event bus.
It is constructed explicitly by the hosting process and injected wherever it
is needed.
"""

import asyncio
import dataclasses
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ..agents.agent_interface import AgentConfig, AgentDecision, AgentState, ArenaAction
from ..agents.archetypes import ARCHETYPES
from ..agents.budget import SpendBudget
from ..agents.decision_engine import DecisionEngine
from ..agents.llm_client import LLMClient
from ..agents.prompts import PromptLibrary, get_prompts
from ..agents.roster import RosterGenerator, RosterResult
from ..config import ArenaSettings
from ..data.commentary import DRAMATIC_EVENTS, TRIGGER_FOR_EVENT, CommentaryEngine
from ..data.event_bus import EventBus, EventCallback, EventStream, StreamMessage
from ..data.events import (
    AgentActivityPayload,
    AgentDeathPayload,
    AgentErrorPayload,
    ArenaEvent,
    BadgePayload,
    BudgetPayload,
    CountdownPayload,
    EventType,
    FeedStalePayload,
    Importance,
    RosterRevealPayload,
    SessionEndedPayload,
    SessionStatusPayload,
    TickPayload,
    TradeClosePayload,
    TradeDcaPayload,
    TradeOpenPayload,
    create_event,
)
from ..data.market_data import MarketDataCache, MarketSnapshot, PriceFeed
from ..data.store import AgentRecord, DecisionPage, DecisionRecord, InMemorySessionStore, SessionStore
from ..exceptions import InvalidConfig, PersistenceFailure, SessionConflict
from ..execution.agent_runtime import AgentRuntime, TradeResult
from ..execution.event_triggers import ArenaEventDetector
from ..execution.scheduler import TickScheduler
from .badges import Badge, TradeOutcome, check_badges
from .scoring import AgentRanking, compute_session_titles, rank_agents
from .session import EndReason, Session, SessionConfig, SessionHandle, SessionStatus, SessionSummary
from .strategies import ExtractedStrategy, extract_strategy

logger = logging.getLogger(__name__)

# (remaining ms, label) checkpoints announced once each
COUNTDOWNS = (
    (3_600_000, "1 hour"),
    (900_000, "15 minutes"),
    (300_000, "5 minutes"),
)


def _now_ms() -> float:
    return time.time() * 1000


def _fmt_price(price: float) -> str:
    return f"{price:.5f}"


@dataclass
class SessionView:
    """Read-only reconstruction of a stored session."""
    session: Dict[str, Any]
    agents: List[AgentState]
    rankings: List[AgentRanking]
    decisions: List[Dict[str, Any]] = field(default_factory=list)
    current_price: Optional[float] = None
    price_source: str = "stored"  # live, stored

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "agents": [a.to_dict() for a in self.agents],
            "rankings": [r.to_dict() for r in self.rankings],
            "decisions": self.decisions,
            "current_price": self.current_price,
            "price_source": self.price_source,
        }


@dataclass
class AgentDetail:
    """One agent with its closed trades; ``live_state`` is set while its session is loaded."""
    agent_id: str
    session_id: str
    config: AgentConfig
    state: AgentState
    closed_positions: List[Dict[str, Any]] = field(default_factory=list)
    live_state: Optional[AgentState] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "config": self.config.to_dict(),
            "state": self.state.to_dict(),
            "live_state": self.live_state.to_dict() if self.live_state else None,
            "positions": self.closed_positions,
        }


class SessionManager:
    """
    Orchestrates one arena session at a time.

    Lifecycle: idle -> configuring -> running <-> paused -> completed. Control
    operations are serialized; rounds are driven by the TickScheduler or, for
    deterministic runs, by ``advance_round``.
    """

    def __init__(
        self,
        feed: PriceFeed,
        llm: Optional[LLMClient] = None,
        store: Optional[SessionStore] = None,
        settings: Optional[ArenaSettings] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
        prompts: Optional[PromptLibrary] = None,
        roster_generator: Optional[RosterGenerator] = None,
    ):
        self.feed = feed
        self.llm = llm
        self.store = store or InMemorySessionStore()
        self.settings = settings or ArenaSettings()
        self.clock = clock or _now_ms
        self.rng = rng or random.Random()
        self.prompts = prompts or get_prompts()
        self.roster_generator = roster_generator or RosterGenerator(
            llm=llm, settings=self.settings, prompts=self.prompts, rng=self.rng
        )
        self.bus = EventBus(
            buffer_size=self.settings.event_buffer_size,
            subscriber_queue_size=self.settings.subscriber_queue_size,
        )

        self._session: Optional[Session] = None
        self._runtimes: Dict[str, AgentRuntime] = {}
        self._engines: Dict[str, DecisionEngine] = {}
        self._roster: Optional[RosterResult] = None
        self._budget: Optional[SpendBudget] = None
        self._market: Optional[MarketDataCache] = None
        self._detector: Optional[ArenaEventDetector] = None
        self._commentary: Optional[CommentaryEngine] = None
        self._scheduler: Optional[TickScheduler] = None
        self._rankings: List[AgentRanking] = []
        self._pending_decisions: List[DecisionRecord] = []
        self._checkpoint_pending = False
        self._countdowns_sent: Set[int] = set()
        self._budget_warning_sent = False
        self._budget_exhausted_sent: Set[str] = set()
        self._feed_stale_reported = False

        self._control_lock = asyncio.Lock()
        self._end_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        config: SessionConfig,
        agent_configs: Optional[Sequence[AgentConfig]] = None,
    ) -> SessionHandle:
        """
        Validate the config, build the roster and agents, and enter configuring.

        Raises:
            InvalidConfig: If the config or the supplied roster is invalid
            SessionConflict: If a session is running or paused
        """
        async with self._control_lock:
            config.validate(self.settings, known_archetypes=ARCHETYPES)

            current = self._session
            if current is not None:
                if current.status in (SessionStatus.RUNNING, SessionStatus.PAUSED):
                    raise SessionConflict(f"Session {current.id} is {current.status.value}; stop it first")
                if current.status == SessionStatus.CONFIGURING:
                    logger.warning(f"Discarding session {current.id} that was never started")

            if agent_configs is None:
                market_context = await self._market_context(config.pair)
                roster = await self.roster_generator.generate(config, market_context)
            else:
                roster = RosterResult(
                    agents=list(agent_configs),
                    theme="Custom Arena",
                    master_commentary="",
                    source="custom",
                )

            if len(roster.agents) < config.agent_count:
                raise InvalidConfig(
                    f"Roster has {len(roster.agents)} agents, session needs {config.agent_count}"
                )
            agents = roster.agents[:config.agent_count]
            names = [a.name for a in agents]
            if len(set(names)) != len(names):
                raise InvalidConfig("Agent names must be unique")
            roster.agents = agents

            session = Session(
                id=uuid.uuid4().hex,
                config=config,
                created_at=self.clock(),
                theme=roster.theme,
                master_commentary=roster.master_commentary,
                roster_source=roster.source,
            )
            session.transition(SessionStatus.CONFIGURING)
            self._reset(session, roster)

            for index, agent_config in enumerate(agents):
                agent_id = f"agent-{index + 1}-{uuid.uuid4().hex[:8]}"
                self._runtimes[agent_id] = AgentRuntime(
                    agent_id=agent_id,
                    config=agent_config,
                    starting_capital=config.starting_capital,
                    leverage=config.leverage,
                    pair=config.pair,
                    registration_index=index,
                    settings=self.settings,
                )
                self._engines[agent_id] = DecisionEngine(
                    agent_id=agent_id,
                    config=agent_config,
                    pair=config.pair,
                    leverage=config.leverage,
                    model_id=config.model_id,
                    llm=self.llm,
                    budget=self._budget,
                    settings=self.settings,
                    prompts=self.prompts,
                )
            self._update_rankings()

            await self._checkpoint()

            self.bus.publish(create_event(
                EventType.ROSTER_REVEAL,
                RosterRevealPayload(
                    theme=roster.theme,
                    master_commentary=roster.master_commentary,
                    source=roster.source,
                    agent_names=tuple(names),
                    fallback_reason=roster.fallback_reason,
                ),
                title=roster.theme or "The roster is in",
                detail=", ".join(names),
                importance=Importance.HIGH,
                timestamp=self.clock(),
                commentary=roster.master_commentary,
            ))
            logger.info(
                f"Created session {session.id}: {len(agents)} agents on {config.pair} "
                f"({roster.source} roster)"
            )
            return SessionHandle(session_id=session.id, agent_ids=tuple(self._runtimes))

    def _reset(self, session: Session, roster: RosterResult):
        config = session.config
        self._session = session
        self._roster = roster
        self._runtimes = {}
        self._engines = {}
        self._budget = SpendBudget(config.session_budget_usd, config.per_agent_budget_usd)
        self._market = MarketDataCache(self.feed, config.pair, self.settings.candle_intervals)
        self._detector = ArenaEventDetector(config.pair)
        self._commentary = CommentaryEngine(
            llm=self.llm,
            budget=self._budget,
            model_id=config.model_id,
            settings=self.settings,
            prompts=self.prompts,
            rng=self.rng,
        )
        self._scheduler = TickScheduler(
            interval_ms=config.decision_interval_ms,
            run_round=self._run_round,
            check_end=self._check_end,
            on_end=self._finish,
        )
        self._rankings = []
        self._pending_decisions = []
        self._checkpoint_pending = False
        self._countdowns_sent = set()
        self._budget_warning_sent = False
        self._budget_exhausted_sent = set()
        self._feed_stale_reported = False
        self.bus.clear()

    async def start(self) -> bool:
        """
        Fetch the opening price and start the scheduler.

        Returns:
            True if the session started, False if it was already running

        Raises:
            SessionConflict: If the session is not configuring
            FeedStale: If no opening price is available
        """
        async with self._control_lock:
            session = self._require_session()
            if session.status == SessionStatus.RUNNING:
                return False
            if session.status != SessionStatus.CONFIGURING:
                raise SessionConflict(f"Cannot start a {session.status.value} session")

            price = await self._market.fetch_price()
            now = self.clock()
            session.transition(SessionStatus.RUNNING)
            session.started_at = now
            session.start_price = price
            session.record_price(price)
            for runtime in self._runtimes.values():
                runtime.mark_to_market(price, now)

            self._publish_status(EventType.SESSION_STARTED, f"Session started on {session.config.pair}", price)
            self._scheduler.start()
            logger.info(f"Session {session.id} started at {_fmt_price(price)}")
            return True

    async def pause(self) -> bool:
        async with self._control_lock:
            session = self._require_session()
            if session.status == SessionStatus.PAUSED:
                return False
            if session.status != SessionStatus.RUNNING:
                raise SessionConflict(f"Cannot pause a {session.status.value} session")

            session.transition(SessionStatus.PAUSED)
            session.paused_at = self.clock()
            self._scheduler.pause()
            self._publish_status(EventType.SESSION_PAUSED, "Session paused", session.last_price)
            return True

    async def resume(self) -> bool:
        async with self._control_lock:
            session = self._require_session()
            if session.status == SessionStatus.RUNNING:
                return False
            if session.status != SessionStatus.PAUSED:
                raise SessionConflict(f"Cannot resume a {session.status.value} session")

            now = self.clock()
            if session.paused_at is not None:
                session.paused_ms += now - session.paused_at
                session.paused_at = None
            session.transition(SessionStatus.RUNNING)
            self._scheduler.resume()
            self._publish_status(EventType.SESSION_RESUMED, "Session resumed", session.last_price)
            return True

    async def stop(self) -> SessionSummary:
        """
        End the session at the next round boundary and return its summary.

        Raises:
            SessionConflict: If no session has been started
        """
        session = self._require_session()
        if session.status == SessionStatus.COMPLETED:
            return session.summary
        if session.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            raise SessionConflict(f"Cannot stop a {session.status.value} session")
        return await self._finish(EndReason.STOPPED)

    async def advance_round(self) -> Optional[EndReason]:
        """
        Run one round now, ending the session if an end condition holds.

        Returns:
            The end reason if the session ended instead of running a round
        """
        session = self._require_session()
        if session.status != SessionStatus.RUNNING:
            raise SessionConflict(f"Rounds only run while the session is running, not {session.status.value}")

        reason = await self._scheduler.run_once()
        if reason is not None and reason != EndReason.STOPPED:
            await self._finish(reason)
        return reason

    async def close(self):
        """Stop an active session; used on process shutdown."""
        session = self._session
        if session is not None and session.status in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            await self.stop()

    async def _finish(self, reason: EndReason) -> SessionSummary:
        async with self._end_lock:
            session = self._session
            if session.status == SessionStatus.COMPLETED:
                return session.summary

            await self._scheduler.shutdown(self.settings.stop_grace_seconds)

            now = self.clock()
            if session.paused_at is not None:
                session.paused_ms += now - session.paused_at
                session.paused_at = None
            price = session.last_price if session.last_price is not None else (session.start_price or 0.0)

            for runtime in self._runtimes.values():
                if runtime.is_dead or not runtime.state.has_position:
                    continue
                result = runtime.close_position(price, now, "Session over")
                self._publish_trade(runtime, result, AgentDecision.hold("Session over"), price, now)

            session.ended_at = now
            session.end_reason = reason
            self._update_rankings()
            summary = self._build_summary(session, reason, now)
            session.summary = summary
            session.transition(SessionStatus.COMPLETED)

            winner = summary.winner
            self.bus.publish(create_event(
                EventType.SESSION_ENDED,
                SessionEndedPayload(session_id=session.id, end_reason=reason.value, summary=summary.to_dict()),
                title=f"{winner.name} wins the arena!" if winner else "Session over",
                detail=f"Session ended: {reason.value}",
                importance=Importance.CRITICAL,
                price_at=price,
                timestamp=now,
                agent_id=winner.agent_id if winner else None,
                agent_name=winner.name if winner else None,
            ))

            await self._checkpoint()
            await self._flush_decisions()
            logger.info(
                f"Session {session.id} completed ({reason.value}) after {session.tick} rounds, "
                f"total cost ${summary.total_cost_usd:.4f}"
            )
            return summary

    def _build_summary(self, session: Session, reason: EndReason, now: float) -> SessionSummary:
        states = self._states()
        rankings = rank_agents(states)
        roster = self._roster
        roster_calls = 1 if roster and (roster.tokens_in or roster.tokens_out) else 0
        decision_cost = sum(s.estimated_cost_usd for s in states)
        commentary_cost = self._commentary.cost_usd
        roster_cost = roster.cost_usd if roster else 0.0
        start_price = session.start_price or 0.0
        end_price = session.last_price if session.last_price is not None else start_price

        return SessionSummary(
            session_id=session.id,
            end_reason=reason.value,
            winner=rankings[0] if rankings else None,
            rankings=rankings,
            titles=compute_session_titles(states),
            total_trades=sum(s.trade_count for s in states),
            total_llm_calls=sum(s.llm_call_count for s in states) + self._commentary.llm_calls + roster_calls,
            decision_cost_usd=decision_cost,
            commentary_cost_usd=commentary_cost,
            roster_cost_usd=roster_cost,
            total_cost_usd=decision_cost + commentary_cost + roster_cost,
            start_price=start_price,
            end_price=end_price,
            market_change_pct=(end_price - start_price) / start_price * 100 if start_price else 0.0,
            duration_ms=session.elapsed_ms(now),
            tick_count=session.tick,
        )

    def _check_end(self) -> Optional[EndReason]:
        session = self._session
        if session.elapsed_ms(self.clock()) >= session.config.max_duration_ms:
            return EndReason.DEADLINE
        if self._runtimes and all(r.is_dead for r in self._runtimes.values()):
            return EndReason.ALL_DEAD
        return None

    # ------------------------------------------------------------------
    # Round
    # ------------------------------------------------------------------

    async def _run_round(self):
        session = self._session
        now = self.clock()
        snapshot = await self._market.snapshot(now)

        session.tick += 1
        tick = session.tick
        session.record_price(snapshot.price, snapshot.stale)
        self._report_feed(snapshot, now)
        self._publish_countdowns(now, snapshot.price)

        alive = [r for r in self._runtimes.values() if not r.is_dead]
        await asyncio.gather(*(self._run_agent(r, snapshot, tick, now) for r in alive))

        states = self._states()
        for event in self._detector.detect(states, snapshot.price, now):
            await self._publish_narrated(event, self._event_variables(event, states))
        for runtime in self._runtimes.values():
            if not runtime.is_dead:
                self._award_badges(runtime, snapshot.price, now)

        self._check_session_budget(snapshot.price, now)
        self._update_rankings()

        self.bus.publish(create_event(
            EventType.TICK,
            TickPayload(
                tick=tick,
                elapsed_ms=int(session.elapsed_ms(now)),
                price_stale=snapshot.stale,
                agents=tuple(s.to_dict() for s in self._states()),
                rankings=tuple(r.to_dict() for r in self._rankings),
            ),
            title=f"Round {tick}",
            importance=Importance.LOW,
            price_at=snapshot.price,
            timestamp=now,
        ))

        if tick % self.settings.checkpoint_every_rounds == 0 or self._checkpoint_pending:
            await self._checkpoint()
        if tick % self.settings.decision_flush_every_rounds == 0:
            await self._flush_decisions()

    async def _run_agent(self, runtime: AgentRuntime, market: MarketSnapshot, tick: int, now: float):
        price = market.price
        try:
            liquidation = runtime.check_liquidation(price, tick, now)
            if liquidation is not None:
                await self._on_trade(runtime, liquidation, AgentDecision.hold("Liquidated"), price, now)
                if runtime.is_dead:
                    return

            runtime.mark_to_market(price, now)

            def notify(activity: str):
                self._publish_activity(runtime, EventType.AGENT_THINKING, activity, None, price, now)

            decision = await self._engines[runtime.agent_id].decide(runtime.snapshot(), market, tick, notify)

            # applied with no await in between so a cancellation cannot split it
            result = runtime.apply(decision, price, tick, now)
            runtime.record_decision(decision, now)
            self._pending_decisions.append(DecisionRecord(
                agent_id=runtime.agent_id,
                tick=tick,
                timestamp=now,
                price=price,
                decision=decision,
                outcome=result.kind,
            ))

            if decision.budget_limited:
                self._report_agent_budget(runtime, price, now)
            await self._on_trade(runtime, result, decision, price, now)
        except Exception as e:
            runtime.record_failure()
            logger.error(f"Agent {runtime.config.name} failed in round {tick}: {e}")
            self.bus.publish(create_event(
                EventType.AGENT_ERROR,
                AgentErrorPayload(error=str(e), failed_decisions=runtime.state.failed_decisions),
                title=f"{runtime.config.name} glitched",
                detail=str(e),
                importance=Importance.MEDIUM,
                price_at=price,
                agent_id=runtime.agent_id,
                agent_name=runtime.config.name,
                timestamp=now,
            ))

    async def _on_trade(
        self,
        runtime: AgentRuntime,
        result: TradeResult,
        decision: AgentDecision,
        price: float,
        now: float,
    ):
        if result.is_noop:
            event_type = EventType.AGENT_HOLD if runtime.state.has_position else EventType.AGENT_WAIT
            self._publish_activity(runtime, event_type, runtime.state.activity, decision, price, now)
            return

        self._publish_trade(runtime, result, decision, price, now)

        if result.kind in ("close", "liquidation"):
            state = runtime.snapshot()
            streak_event = self._detector.record_trade_result(state, result.won, price, now)
            if streak_event is not None:
                variables = self._agent_variables(state, price, streak=self._detector.streak(state.agent_id))
                await self._publish_narrated(streak_event, variables, runtime.config)
            outcome = TradeOutcome(
                realized_pnl=result.realized_pnl,
                pnl_percent=result.pnl_percent,
                hold_ms=result.hold_ms,
                worst_pnl_percent=result.position.worst_pnl_percent if result.position else 0.0,
                side=result.side,
                consecutive_wins=self._detector.streak(state.agent_id),
            )
            self._award_badges(runtime, price, now, outcome)

        if result.died:
            await self._publish_death(runtime, price, now)

    def _publish_trade(
        self,
        runtime: AgentRuntime,
        result: TradeResult,
        decision: AgentDecision,
        price: float,
        now: float,
    ):
        config = runtime.config
        state = runtime.state
        variables = self._agent_variables(state, price, side=result.side or "")
        position = result.position

        if result.kind == "open":
            event_type, trigger = EventType.TRADE_OPEN, "on_entry"
            payload = TradeOpenPayload(
                side=result.side,
                size_pct=result.size_pct,
                margin=result.margin,
                volume=result.volume,
                entry_price=result.entry_price,
                leverage=runtime.leverage,
                liquidation_price=position.liquidation_price,
                fees=result.fees,
                reasoning=decision.reasoning,
            )
            title = f"{config.name} opens {result.side}"
            detail = f"{result.size_pct:.0f}% margin at {_fmt_price(price)}, {runtime.leverage:g}x"
            importance = Importance.MEDIUM
        elif result.kind == "dca":
            event_type, trigger = EventType.TRADE_DCA, "on_dca"
            payload = TradeDcaPayload(
                side=result.side,
                dca_count=position.dca_count,
                added_volume=result.volume,
                avg_entry_price=result.entry_price,
                margin_used=position.margin_used,
                liquidation_price=position.liquidation_price,
                fees=result.fees,
            )
            title = f"{config.name} doubles down"
            detail = f"DCA #{position.dca_count}, average entry now {_fmt_price(result.entry_price)}"
            importance = Importance.MEDIUM
        else:
            liquidated = result.kind == "liquidation"
            event_type = EventType.TRADE_CLOSE
            trigger = "on_exit_profit" if result.won else "on_exit_loss"
            variables.update(pnl=f"{result.realized_pnl:+.2f}", pnl_percent=f"{result.pnl_percent:+.1f}")
            payload = TradeClosePayload(
                side=result.side,
                entry_price=result.entry_price,
                exit_price=result.price,
                realized_pnl=result.realized_pnl,
                pnl_percent=result.pnl_percent,
                fees=result.fees,
                won=result.won,
                liquidation=liquidated,
                hold_ms=result.hold_ms,
            )
            if liquidated:
                title = f"{config.name} LIQUIDATED"
                detail = f"{result.side} wiped out at {_fmt_price(result.price)}, margin forfeited"
                importance = Importance.CRITICAL
            else:
                title = f"{config.name} closes {result.side}"
                detail = f"{result.realized_pnl:+.2f} ({result.pnl_percent:+.1f}%)"
                importance = Importance.HIGH if abs(result.pnl_percent) >= 10 else Importance.MEDIUM

        self.bus.publish(create_event(
            event_type,
            payload,
            title=title,
            detail=detail,
            importance=importance,
            price_at=price,
            agent_id=runtime.agent_id,
            agent_name=config.name,
            timestamp=now,
            commentary=self._commentary.line(trigger, variables, config.commentary_templates),
        ))

    async def _publish_death(self, runtime: AgentRuntime, price: float, now: float):
        state = runtime.snapshot()
        event = create_event(
            EventType.AGENT_DEATH,
            AgentDeathPayload(
                status=state.status,
                reason=state.death_reason or "",
                death_tick=state.death_tick or 0,
                final_equity=state.equity,
            ),
            title=f"{state.name} is eliminated",
            detail=state.death_reason or "",
            importance=Importance.CRITICAL,
            price_at=price,
            agent_id=state.agent_id,
            agent_name=state.name,
            timestamp=now,
        )
        await self._publish_narrated(event, self._agent_variables(state, price), runtime.config)

    def _award_badges(
        self,
        runtime: AgentRuntime,
        price: float,
        now: float,
        trade: Optional[TradeOutcome] = None,
    ):
        state = runtime.snapshot()
        earned: List[Badge] = check_badges(
            state, self._states(), self._detector.lowest_health(state.agent_id), trade
        )
        for badge in earned:
            if not runtime.award_badge(badge.id):
                continue
            variables = self._agent_variables(state, price, badge=badge.name)
            self.bus.publish(create_event(
                EventType.BADGE_EARNED,
                BadgePayload(badge_id=badge.id, badge_name=badge.name, rarity=badge.rarity),
                title=f"{state.name} earns {badge.name}",
                detail=badge.description,
                importance=Importance.HIGH if badge.rarity in ("rare", "epic") else Importance.MEDIUM,
                price_at=price,
                agent_id=state.agent_id,
                agent_name=state.name,
                timestamp=now,
                commentary=self._commentary.line("on_badge", variables, runtime.config.commentary_templates),
            ))

    async def _publish_narrated(
        self,
        event: ArenaEvent,
        variables: Dict[str, Any],
        config: Optional[AgentConfig] = None,
    ):
        trigger = TRIGGER_FOR_EVENT.get(event.type)
        if trigger is not None:
            templates = config.commentary_templates if config else None
            line = self._commentary.line(trigger, variables, templates)
            if event.type in DRAMATIC_EVENTS:
                line = await self._commentary.narrate(event, self._states(), line)
            event = dataclasses.replace(event, commentary=line)
        self.bus.publish(event)

    def _publish_activity(
        self,
        runtime: AgentRuntime,
        event_type: EventType,
        activity: str,
        decision: Optional[AgentDecision],
        price: float,
        now: float,
    ):
        state = runtime.state
        if event_type == EventType.AGENT_THINKING:
            title = f"{state.name} is thinking"
        elif event_type == EventType.AGENT_HOLD:
            title = f"{state.name} holds"
        else:
            title = f"{state.name} waits"
        self.bus.publish(create_event(
            event_type,
            AgentActivityPayload(
                action=decision.action.value if decision else ArenaAction.HOLD.value,
                activity=activity,
                confidence=decision.confidence if decision else 0.0,
                used_llm=decision.used_llm if decision else False,
                budget_limited=decision.budget_limited if decision else False,
                balance=state.balance,
                health=state.health,
            ),
            title=title,
            detail=decision.reasoning if decision else "",
            importance=Importance.LOW,
            price_at=price,
            agent_id=runtime.agent_id,
            agent_name=state.name,
            timestamp=now,
        ))

    def _publish_status(self, event_type: EventType, title: str, price: Optional[float]):
        session = self._session
        now = self.clock()
        self.bus.publish(create_event(
            event_type,
            SessionStatusPayload(
                session_id=session.id,
                status=session.status.value,
                tick=session.tick,
                elapsed_ms=int(session.elapsed_ms(now)),
            ),
            title=title,
            importance=Importance.HIGH,
            price_at=price or 0.0,
            timestamp=now,
        ))

    def _publish_countdowns(self, now: float, price: float):
        session = self._session
        max_ms = session.config.max_duration_ms
        remaining = max_ms - session.elapsed_ms(now)
        crossed = [
            (threshold, label) for threshold, label in COUNTDOWNS
            if threshold < max_ms and remaining <= threshold and threshold not in self._countdowns_sent
        ]
        if not crossed:
            return
        for threshold, _ in crossed:
            self._countdowns_sent.add(threshold)
        # only the nearest checkpoint is worth announcing
        threshold, label = min(crossed)
        self.bus.publish(create_event(
            EventType.SESSION_COUNTDOWN,
            CountdownPayload(remaining_ms=int(max(0.0, remaining)), label=label),
            title=f"{label} remaining",
            importance=Importance.HIGH,
            price_at=price,
            timestamp=now,
        ))

    def _report_feed(self, snapshot: MarketSnapshot, now: float):
        if not snapshot.stale:
            self._feed_stale_reported = False
            return
        if self._feed_stale_reported:
            return
        self._feed_stale_reported = True
        self.bus.publish(create_event(
            EventType.FEED_STALE,
            FeedStalePayload(last_price=snapshot.price, error=snapshot.error or "unknown"),
            title="Price feed lagging",
            detail=f"Reusing last price {_fmt_price(snapshot.price)}",
            importance=Importance.HIGH,
            price_at=snapshot.price,
            timestamp=now,
        ))

    def _report_agent_budget(self, runtime: AgentRuntime, price: float, now: float):
        if runtime.agent_id in self._budget_exhausted_sent:
            return
        self._budget_exhausted_sent.add(runtime.agent_id)
        budget = self._budget
        if budget.exhausted or budget.per_key_limit_usd is None:
            scope, spent, limit = "session", budget.spent_usd, budget.limit_usd
        else:
            scope, spent, limit = "agent", budget.spent_by(runtime.agent_id), budget.per_key_limit_usd
        self.bus.publish(create_event(
            EventType.BUDGET_EXHAUSTED,
            BudgetPayload(scope=scope, spent_usd=spent, limit_usd=limit),
            title=f"{runtime.config.name} is out of budget",
            detail=f"Falls back to holding: ${spent:.4f} of ${limit:.4f} spent",
            importance=Importance.HIGH,
            price_at=price,
            agent_id=runtime.agent_id,
            agent_name=runtime.config.name,
            timestamp=now,
        ))

    def _check_session_budget(self, price: float, now: float):
        budget = self._budget
        if self._budget_warning_sent or budget.limit_usd <= 0:
            return
        if budget.spent_usd < budget.limit_usd * self.settings.budget_warning_ratio:
            return
        self._budget_warning_sent = True
        self.bus.publish(create_event(
            EventType.BUDGET_WARNING,
            BudgetPayload(scope="session", spent_usd=budget.spent_usd, limit_usd=budget.limit_usd),
            title="Budget running low",
            detail=f"${budget.spent_usd:.4f} of ${budget.limit_usd:.4f} spent",
            importance=Importance.HIGH,
            price_at=price,
            timestamp=now,
        ))

    def _agent_variables(self, state: AgentState, price: float, **extra) -> Dict[str, Any]:
        variables: Dict[str, Any] = {
            "name": state.name,
            "price": _fmt_price(price),
            "health": f"{state.health:.0f}",
            "rank": state.rank,
            "pnl": f"{state.total_pnl:+.2f}",
            "pnl_percent": f"{state.pnl_percent:+.1f}",
        }
        if state.has_position:
            variables["side"] = state.position.side
        variables.update(extra)
        return variables

    def _event_variables(self, event: ArenaEvent, states: Sequence[AgentState]) -> Dict[str, Any]:
        by_id = {s.agent_id: s for s in states}
        payload = event.payload
        if event.type == EventType.FACE_OFF:
            first = by_id.get(payload.agent1_id)
            variables = self._agent_variables(first, event.price_at) if first else {"name": payload.agent1_name}
            variables["rival"] = payload.agent2_name
            return variables

        state = by_id.get(event.agent_id) if event.agent_id else None
        if state is None:
            return {"price": _fmt_price(event.price_at)}
        variables = self._agent_variables(state, event.price_at)
        if event.type == EventType.MILESTONE:
            variables["threshold"] = f"{payload.threshold_pct:.0f}"
        return variables

    # ------------------------------------------------------------------
    # Durability
    # ------------------------------------------------------------------

    async def _checkpoint(self):
        session = self._session
        records = [
            AgentRecord(state=r.snapshot(), config=r.config, closed_positions=list(r.closed_positions))
            for r in self._runtimes.values()
        ]
        try:
            await self.store.save_session_snapshot(session, records)
            self._checkpoint_pending = False
        except PersistenceFailure as e:
            self._checkpoint_pending = True
            logger.error(f"Checkpoint of session {session.id} failed, will retry: {e}")

    async def _flush_decisions(self):
        if not self._pending_decisions:
            return
        batch = list(self._pending_decisions)
        try:
            await self.store.save_decisions(self._session.id, batch)
        except PersistenceFailure as e:
            logger.error(f"Decision flush failed, keeping {len(batch)} decisions buffered: {e}")
            return
        del self._pending_decisions[:len(batch)]

    async def load_session_view(self, session_id: str) -> Optional[SessionView]:
        """
        Reconstruct a session from the store.

        Open positions are re-marked against the current price when the feed
        answers; otherwise against the last stored price.
        """
        stored = await self.store.load_session(session_id)
        if stored is None:
            return None

        data = stored.session
        config = SessionConfig.from_dict(data["config"])
        price = data.get("last_price")
        price_source = "stored"
        try:
            price = float(await self.feed.get_current_price(config.pair))
            price_source = "live"
        except Exception as e:
            logger.warning(f"No live price for {config.pair}, using stored price: {e}")

        now = self.clock()
        states: List[AgentState] = []
        for record in stored.agents:
            agent_config = AgentConfig.from_dict(record["config"])
            state = AgentState.from_dict(record["state"])
            runtime = AgentRuntime(
                agent_id=state.agent_id,
                config=agent_config,
                starting_capital=state.starting_capital,
                leverage=config.leverage,
                pair=config.pair,
                registration_index=state.registration_index,
                settings=self.settings,
                state=state,
            )
            if price and state.has_position:
                runtime.mark_to_market(price, now)
            states.append(runtime.snapshot())

        return SessionView(
            session=data,
            agents=states,
            rankings=rank_agents(states),
            decisions=stored.decisions,
            current_price=price,
            price_source=price_source,
        )

    async def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.store.list_sessions(limit)

    async def get_agent_detail(self, agent_id: str, position_limit: int = 20) -> Optional[AgentDetail]:
        """
        An agent's config, state and most recent closed trades, newest first.

        Agents of the loaded session are answered from memory and carry their
        live state; any other agent is read from the store.
        """
        runtime = self._runtimes.get(agent_id)
        if runtime is not None:
            state = runtime.snapshot()
            return AgentDetail(
                agent_id=agent_id,
                session_id=self._session.id,
                config=runtime.config,
                state=state,
                closed_positions=[p.to_dict() for p in reversed(runtime.closed_positions)][:position_limit],
                live_state=state,
            )

        stored = await self.store.load_agent(agent_id, position_limit)
        if stored is None:
            return None
        return AgentDetail(
            agent_id=agent_id,
            session_id=stored.session_id,
            config=AgentConfig.from_dict(stored.config),
            state=AgentState.from_dict(stored.state),
            closed_positions=stored.closed_positions,
        )

    async def get_agent_log(
        self,
        agent_id: str,
        action: Optional[ArenaAction] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Optional[DecisionPage]:
        """
        One page of an agent's decisions, newest first, with the total match count.

        Returns None for an unknown agent. Buffered decisions of the loaded
        session are flushed first so the log is current.
        """
        if agent_id in self._runtimes:
            await self._flush_decisions()
        elif await self.store.load_agent(agent_id, position_limit=0) is None:
            return None
        return await self.store.load_agent_decisions(
            agent_id, action.value if action is not None else None, limit, offset
        )

    async def extract_strategy(self, agent_id: str) -> Optional[ExtractedStrategy]:
        """Save the agent's strategy, rated by its record, as a reusable template."""
        detail = await self.get_agent_detail(agent_id, position_limit=0)
        if detail is None:
            return None
        if detail.live_state is not None:
            pair = self._session.config.pair
        else:
            stored = await self.store.load_session(detail.session_id)
            pair = stored.session["config"]["pair"] if stored else ""
        strategy = extract_strategy(detail.session_id, detail.state, detail.config, pair, self.clock())
        await self.store.save_strategy(strategy)
        logger.info(f"Extracted {strategy.name} (rating {strategy.rating:.1f})")
        return strategy

    async def list_strategies(self) -> List[ExtractedStrategy]:
        return await self.store.list_strategies()

    async def deactivate_strategy(self, strategy_id: str) -> bool:
        return await self.store.deactivate_strategy(strategy_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._session.status if self._session else SessionStatus.IDLE

    @property
    def session_id(self) -> Optional[str]:
        return self._session.id if self._session else None

    @property
    def config(self) -> Optional[SessionConfig]:
        return self._session.config if self._session else None

    @property
    def tick_count(self) -> int:
        return self._session.tick if self._session else 0

    @property
    def current_price(self) -> Optional[float]:
        return self._session.last_price if self._session else None

    @property
    def price_stale(self) -> bool:
        return self._session.price_stale if self._session else False

    @property
    def summary(self) -> Optional[SessionSummary]:
        return self._session.summary if self._session else None

    @property
    def budget(self) -> Optional[SpendBudget]:
        return self._budget

    @property
    def roster_intro(self) -> Optional[Dict[str, Any]]:
        roster = self._roster
        if roster is None:
            return None
        return {
            "theme": roster.theme,
            "master_commentary": roster.master_commentary,
            "source": roster.source,
            "fallback_reason": roster.fallback_reason,
            "agent_names": [a.name for a in roster.agents],
            "tokens_in": roster.tokens_in,
            "tokens_out": roster.tokens_out,
            "cost_usd": roster.cost_usd,
            "warnings": list(roster.warnings),
        }

    def elapsed_ms(self) -> float:
        return self._session.elapsed_ms(self.clock()) if self._session else 0.0

    def get_agent_snapshots(self) -> List[AgentState]:
        return self._states()

    def get_agent_configs(self) -> Dict[str, AgentConfig]:
        return {agent_id: r.config for agent_id, r in self._runtimes.items()}

    def get_rankings(self) -> List[AgentRanking]:
        return list(self._rankings)

    def get_event_buffer(self) -> List[ArenaEvent]:
        return self.bus.get_buffer()

    def get_status_snapshot(self) -> Dict[str, Any]:
        session = self._session
        if session is None:
            return {"session_id": None, "status": SessionStatus.IDLE.value}

        states = self._states()
        return {
            "session_id": session.id,
            "status": session.status.value,
            "pair": session.config.pair,
            "theme": session.theme,
            "tick": session.tick,
            "elapsed_ms": session.elapsed_ms(self.clock()),
            "max_duration_ms": session.config.max_duration_ms,
            "current_price": session.last_price,
            "start_price": session.start_price,
            "price_stale": session.price_stale,
            "agent_count": len(states),
            "alive_count": sum(1 for s in states if not s.is_dead),
            "budget": self._budget.to_dict() if self._budget else None,
            "config": session.config.to_dict(),
            "end_reason": session.end_reason.value if session.end_reason else None,
        }

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        return self.bus.subscribe(callback)

    def connect_observer(self) -> EventStream:
        """
        Open an observer stream.

        Delivery order: status snapshot, agent snapshots, rankings, buffered
        replay, then live events.
        """
        preamble = [
            StreamMessage(kind="connected", data=self.get_status_snapshot()),
            StreamMessage(kind="agent_update", data=[s.to_dict() for s in self._states()]),
            StreamMessage(kind="leaderboard", data=[r.to_dict() for r in self._rankings]),
        ]
        return self.bus.open_stream(preamble)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self) -> Session:
        if self._session is None:
            raise SessionConflict("No session has been created")
        return self._session

    def _states(self) -> List[AgentState]:
        return [r.snapshot() for r in self._runtimes.values()]

    def _update_rankings(self):
        self._rankings = rank_agents(self._states())
        for ranking in self._rankings:
            self._runtimes[ranking.agent_id].set_rank(ranking.rank)

    async def _market_context(self, pair: str) -> Optional[str]:
        try:
            price = float(await self.feed.get_current_price(pair))
        except Exception as e:
            logger.warning(f"No market context for roster generation: {e}")
            return None
        return f"{pair} trading at {_fmt_price(price)}"
