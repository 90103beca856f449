"""
Durable session store.

Checkpoints hold the whole session record plus every agent's config and
state, so a finished or orphaned session can be reconstructed later.
Decisions are appended in batches.
"""

import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ..agents.agent_interface import AgentConfig, AgentDecision, AgentState, ClosedPosition
from ..competition.session import Session
from ..competition.strategies import ExtractedStrategy
from ..db import Database
from ..exceptions import PersistenceFailure
from ..models import ArenaAgent, ArenaDecision, ArenaPosition, ArenaSession, ArenaStrategy

logger = logging.getLogger(__name__)


@dataclass
class AgentRecord:
    state: AgentState
    config: AgentConfig
    closed_positions: List[ClosedPosition] = field(default_factory=list)


@dataclass
class DecisionRecord:
    agent_id: str
    tick: int
    timestamp: float
    price: float
    decision: AgentDecision
    outcome: str = "noop"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "tick": self.tick,
            "timestamp": self.timestamp,
            "price": self.price,
            "outcome": self.outcome,
            **self.decision.to_dict(),
        }


@dataclass
class StoredSession:
    session: Dict[str, Any]
    agents: List[Dict[str, Any]] = field(default_factory=list)  # {"config": ..., "state": ...}
    decisions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class StoredAgent:
    session_id: str
    config: Dict[str, Any]
    state: Dict[str, Any]
    closed_positions: List[Dict[str, Any]] = field(default_factory=list)  # newest first


@dataclass
class DecisionPage:
    decisions: List[Dict[str, Any]]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decisions": self.decisions,
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


class SessionStore(Protocol):
    async def save_session_snapshot(self, session: Session, agents: Sequence[AgentRecord]):
        ...

    async def load_session(self, session_id: str) -> Optional[StoredSession]:
        ...

    async def save_decisions(self, session_id: str, decisions: Sequence[DecisionRecord]):
        ...

    async def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        ...

    async def load_agent(self, agent_id: str, position_limit: int = 20) -> Optional[StoredAgent]:
        ...

    async def load_agent_decisions(
        self, agent_id: str, action: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> DecisionPage:
        ...

    async def save_strategy(self, strategy: ExtractedStrategy):
        ...

    async def list_strategies(self) -> List[ExtractedStrategy]:
        ...

    async def deactivate_strategy(self, strategy_id: str) -> bool:
        ...


def _listing_row(data: Dict[str, Any]) -> Dict[str, Any]:
    summary = data.get("summary") or {}
    winner = summary.get("winner") or {}
    return {
        "id": data["id"],
        "status": data["status"],
        "pair": data["config"]["pair"],
        "theme": data.get("theme", ""),
        "tick": data.get("tick", 0),
        "created_at": data["created_at"],
        "started_at": data.get("started_at"),
        "ended_at": data.get("ended_at"),
        "end_reason": data.get("end_reason"),
        "winner_name": winner.get("name"),
        "total_cost_usd": summary.get("total_cost_usd", 0.0),
    }


def _position_row(session_id: str, agent_id: str, position: ClosedPosition) -> ArenaPosition:
    data = position.to_dict()
    return ArenaPosition(
        id=position.id,
        session_id=session_id,
        agent_id=agent_id,
        pair=position.pair,
        side=position.side,
        exit_kind=position.exit_kind,
        volume=position.volume,
        entry_price=position.entry_price,
        exit_price=position.exit_price,
        leverage=position.leverage,
        margin_used=position.margin_used,
        opened_at=position.opened_at,
        closed_at=position.closed_at,
        realized_pnl=position.realized_pnl,
        pnl_percent=position.pnl_percent,
        total_fees=position.total_fees,
        worst_pnl_percent=position.worst_pnl_percent,
        dca_count=position.dca_count,
        dca_history=data["dca_entries"],
        entry_reasoning=position.entry_reasoning,
        exit_reasoning=position.exit_reasoning,
    )


class InMemorySessionStore:
    """Process-local store; used when no database is configured."""

    def __init__(self):
        self._sessions: Dict[str, StoredSession] = {}
        self._positions: Dict[str, List[Dict[str, Any]]] = {}
        self._strategies: Dict[str, ExtractedStrategy] = {}

    async def save_session_snapshot(self, session: Session, agents: Sequence[AgentRecord]):
        self._sessions[session.id] = StoredSession(
            session=copy.deepcopy(session.to_dict()),
            agents=[{"config": a.config.to_dict(), "state": a.state.to_dict()} for a in agents],
            decisions=self._sessions[session.id].decisions if session.id in self._sessions else [],
        )
        for record in agents:
            self._positions[record.state.agent_id] = [p.to_dict() for p in record.closed_positions]

    async def load_session(self, session_id: str) -> Optional[StoredSession]:
        stored = self._sessions.get(session_id)
        return copy.deepcopy(stored) if stored else None

    async def save_decisions(self, session_id: str, decisions: Sequence[DecisionRecord]):
        stored = self._sessions.get(session_id)
        if stored is None:
            raise PersistenceFailure(f"Unknown session {session_id}")
        stored.decisions.extend(d.to_dict() for d in decisions)

    async def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = [_listing_row(s.session) for s in self._sessions.values()]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows[:limit]

    async def load_agent(self, agent_id: str, position_limit: int = 20) -> Optional[StoredAgent]:
        for session_id, stored in self._sessions.items():
            for agent in stored.agents:
                if agent["state"]["agent_id"] != agent_id:
                    continue
                positions = self._positions.get(agent_id, [])
                return StoredAgent(
                    session_id=session_id,
                    config=copy.deepcopy(agent["config"]),
                    state=copy.deepcopy(agent["state"]),
                    closed_positions=copy.deepcopy(positions[::-1][:position_limit]),
                )
        return None

    async def load_agent_decisions(
        self, agent_id: str, action: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> DecisionPage:
        matching = [
            d for stored in self._sessions.values() for d in stored.decisions
            if d["agent_id"] == agent_id and (action is None or d["action"] == action)
        ]
        newest_first = matching[::-1]
        return DecisionPage(
            decisions=copy.deepcopy(newest_first[offset:offset + limit]),
            total=len(matching),
            limit=limit,
            offset=offset,
        )

    async def save_strategy(self, strategy: ExtractedStrategy):
        self._strategies[strategy.id] = strategy

    async def list_strategies(self) -> List[ExtractedStrategy]:
        active = [s for s in self._strategies.values() if s.is_active]
        return sorted(active, key=lambda s: s.rating, reverse=True)

    async def deactivate_strategy(self, strategy_id: str) -> bool:
        strategy = self._strategies.get(strategy_id)
        if strategy is None or not strategy.is_active:
            return False
        self._strategies[strategy_id] = replace(strategy, is_active=False)
        return True


class SqlAlchemySessionStore:
    """Store on the async SQLAlchemy Database."""

    def __init__(self, database: Database):
        self.database = database

    async def save_session_snapshot(self, session: Session, agents: Sequence[AgentRecord]):
        data = session.to_dict()
        row = _listing_row(data)
        try:
            async with self.database.get_session() as db_session:
                await db_session.merge(ArenaSession(
                    id=session.id,
                    status=row["status"],
                    pair=row["pair"],
                    theme=row["theme"],
                    tick=row["tick"],
                    created_at=row["created_at"],
                    started_at=row["started_at"],
                    ended_at=row["ended_at"],
                    end_reason=row["end_reason"],
                    winner_name=row["winner_name"],
                    total_cost_usd=row["total_cost_usd"],
                    data=data,
                ))
                for record in agents:
                    state = record.state
                    await db_session.merge(ArenaAgent(
                        id=state.agent_id,
                        session_id=session.id,
                        registration_index=state.registration_index,
                        name=state.name,
                        archetype_id=state.archetype_id,
                        equity=state.equity,
                        rank=state.rank,
                        status=state.status,
                        is_dead=state.is_dead,
                        config=record.config.to_dict(),
                        state=state.to_dict(),
                    ))
                    for position in record.closed_positions:
                        await db_session.merge(_position_row(session.id, state.agent_id, position))
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Checkpoint of session {session.id} failed: {e}") from e

    async def load_session(self, session_id: str) -> Optional[StoredSession]:
        try:
            async with self.database.get_session() as db_session:
                row = await db_session.get(ArenaSession, session_id)
                if row is None:
                    return None
                agents = (await db_session.execute(
                    select(ArenaAgent)
                    .where(ArenaAgent.session_id == session_id)
                    .order_by(ArenaAgent.registration_index)
                )).scalars().all()
                decisions = (await db_session.execute(
                    select(ArenaDecision)
                    .where(ArenaDecision.session_id == session_id)
                    .order_by(ArenaDecision.id)
                )).scalars().all()
                return StoredSession(
                    session=row.data,
                    agents=[{"config": a.config, "state": a.state} for a in agents],
                    decisions=[self._decision_dict(d) for d in decisions],
                )
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Loading session {session_id} failed: {e}") from e

    async def save_decisions(self, session_id: str, decisions: Sequence[DecisionRecord]):
        if not decisions:
            return
        try:
            async with self.database.get_session() as db_session:
                db_session.add_all([
                    ArenaDecision(
                        session_id=session_id,
                        agent_id=d.agent_id,
                        tick=d.tick,
                        timestamp=d.timestamp,
                        price=d.price,
                        action=d.decision.action.value,
                        outcome=d.outcome,
                        confidence=d.decision.confidence,
                        size_pct=d.decision.size_pct,
                        reasoning=d.decision.reasoning,
                        used_llm=d.decision.used_llm,
                        budget_limited=d.decision.budget_limited,
                        input_tokens=d.decision.input_tokens,
                        output_tokens=d.decision.output_tokens,
                        cost_usd=d.decision.cost_usd,
                    )
                    for d in decisions
                ])
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Saving {len(decisions)} decisions failed: {e}") from e

    async def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        try:
            async with self.database.get_session() as db_session:
                rows = (await db_session.execute(
                    select(ArenaSession).order_by(ArenaSession.created_at.desc()).limit(limit)
                )).scalars().all()
                return [row.to_summary() for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Listing sessions failed: {e}") from e

    async def load_agent(self, agent_id: str, position_limit: int = 20) -> Optional[StoredAgent]:
        try:
            async with self.database.get_session() as db_session:
                row = await db_session.get(ArenaAgent, agent_id)
                if row is None:
                    return None
                positions = (await db_session.execute(
                    select(ArenaPosition)
                    .where(ArenaPosition.agent_id == agent_id)
                    .order_by(ArenaPosition.closed_at.desc())
                    .limit(position_limit)
                )).scalars().all()
                return StoredAgent(
                    session_id=row.session_id,
                    config=row.config,
                    state=row.state,
                    closed_positions=[ClosedPosition.from_dict(p.to_dict()).to_dict() for p in positions],
                )
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Loading agent {agent_id} failed: {e}") from e

    async def load_agent_decisions(
        self, agent_id: str, action: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> DecisionPage:
        conditions = [ArenaDecision.agent_id == agent_id]
        if action is not None:
            conditions.append(ArenaDecision.action == action)
        try:
            async with self.database.get_session() as db_session:
                total = (await db_session.execute(
                    select(func.count()).select_from(ArenaDecision).where(*conditions)
                )).scalar_one()
                rows = (await db_session.execute(
                    select(ArenaDecision)
                    .where(*conditions)
                    .order_by(ArenaDecision.id.desc())
                    .offset(offset)
                    .limit(limit)
                )).scalars().all()
                return DecisionPage(
                    decisions=[self._decision_dict(d) for d in rows],
                    total=total,
                    limit=limit,
                    offset=offset,
                )
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Loading decisions of agent {agent_id} failed: {e}") from e

    async def save_strategy(self, strategy: ExtractedStrategy):
        try:
            async with self.database.get_session() as db_session:
                db_session.add(ArenaStrategy(**strategy.to_dict()))
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Saving strategy {strategy.name} failed: {e}") from e

    async def list_strategies(self) -> List[ExtractedStrategy]:
        try:
            async with self.database.get_session() as db_session:
                rows = (await db_session.execute(
                    select(ArenaStrategy)
                    .where(ArenaStrategy.is_active.is_(True))
                    .order_by(ArenaStrategy.rating.desc())
                )).scalars().all()
                return [self._strategy(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Listing strategies failed: {e}") from e

    async def deactivate_strategy(self, strategy_id: str) -> bool:
        try:
            async with self.database.get_session() as db_session:
                row = await db_session.get(ArenaStrategy, strategy_id)
                if row is None or not row.is_active:
                    return False
                row.is_active = False
                return True
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Deactivating strategy {strategy_id} failed: {e}") from e

    @staticmethod
    def _strategy(row: ArenaStrategy) -> ExtractedStrategy:
        return ExtractedStrategy(
            id=row.id,
            name=row.name,
            description=row.description or "",
            config=row.config,
            source_session_id=row.source_session_id,
            source_agent_id=row.source_agent_id,
            source_agent_name=row.source_agent_name,
            win_rate=row.win_rate,
            total_pnl=row.total_pnl,
            max_drawdown=row.max_drawdown,
            total_trades=row.total_trades,
            rating=row.rating,
            created_at=row.created_at,
            is_active=row.is_active,
        )

    @staticmethod
    def _decision_dict(row: ArenaDecision) -> Dict[str, Any]:
        return {
            "agent_id": row.agent_id,
            "tick": row.tick,
            "timestamp": row.timestamp,
            "price": row.price,
            "outcome": row.outcome,
            "action": row.action,
            "reasoning": row.reasoning,
            "confidence": row.confidence,
            "size_pct": row.size_pct,
            "used_llm": row.used_llm,
            "input_tokens": row.input_tokens,
            "output_tokens": row.output_tokens,
            "cost_usd": row.cost_usd,
            "budget_limited": row.budget_limited,
        }
