"""
Strategies extracted from finished agents, rated by how well they traded.
"""

from sqlalchemy import Boolean, Column, Float, Integer, JSON, String, Text

from .base import Base


class ArenaStrategy(Base):
    __tablename__ = "arena_strategies"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    config = Column(JSON, nullable=False)

    source_session_id = Column(String(64), nullable=False, index=True)
    source_agent_id = Column(String(64), nullable=False)
    source_agent_name = Column(String(255), nullable=False)

    win_rate = Column(Float, default=0.0)
    total_pnl = Column(Float, default=0.0)
    max_drawdown = Column(Float, default=0.0)
    total_trades = Column(Integer, default=0)
    rating = Column(Float, default=0.0, index=True)
    created_at = Column(Float, nullable=False)
    is_active = Column(Boolean, default=True, index=True)

    def __repr__(self):
        return f"<ArenaStrategy(name={self.name}, rating={self.rating:.1f})>"
