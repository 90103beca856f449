"""
Arena closed-position model: one row per finished trade, with its DCA history
and the reasoning behind the entry and the exit.
"""

from sqlalchemy import Column, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from .base import Base


class ArenaPosition(Base):
    __tablename__ = "arena_positions"

    id = Column(String(64), primary_key=True)
    session_id = Column(String(64), ForeignKey("arena_sessions.id"), nullable=False, index=True)
    agent_id = Column(String(64), ForeignKey("arena_agents.id"), nullable=False, index=True)
    pair = Column(String(20), nullable=False)
    side = Column(String(10), nullable=False)
    exit_kind = Column(String(20), nullable=False)  # close, liquidation

    volume = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=False)
    leverage = Column(Float, nullable=False)
    margin_used = Column(Float, nullable=False)
    opened_at = Column(Float, nullable=False)
    closed_at = Column(Float, nullable=False, index=True)

    realized_pnl = Column(Float, nullable=False)
    pnl_percent = Column(Float, default=0.0)
    total_fees = Column(Float, default=0.0)
    worst_pnl_percent = Column(Float, default=0.0)

    dca_count = Column(Integer, default=0)
    dca_history = Column(JSON, nullable=False, default=list)
    entry_reasoning = Column(Text, default="")
    exit_reasoning = Column(Text, default="")

    agent = relationship("ArenaAgent", back_populates="positions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pair": self.pair,
            "side": self.side,
            "exit_kind": self.exit_kind,
            "volume": self.volume,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "leverage": self.leverage,
            "margin_used": self.margin_used,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "realized_pnl": self.realized_pnl,
            "pnl_percent": self.pnl_percent,
            "total_fees": self.total_fees,
            "worst_pnl_percent": self.worst_pnl_percent,
            "dca_count": self.dca_count,
            "dca_entries": list(self.dca_history or []),
            "entry_reasoning": self.entry_reasoning or "",
            "exit_reasoning": self.exit_reasoning or "",
        }

    def __repr__(self):
        return f"<ArenaPosition(agent={self.agent_id}, side={self.side}, pnl={self.realized_pnl:+.2f})>"
