"""
Arena decision log model: one row per agent decision, flushed in batches.
"""

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .base import Base


class ArenaDecision(Base):
    __tablename__ = "arena_decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey("arena_sessions.id"), nullable=False, index=True)
    agent_id = Column(String(64), nullable=False, index=True)
    tick = Column(Integer, nullable=False)
    timestamp = Column(Float, nullable=False)
    price = Column(Float, nullable=False)

    action = Column(String(20), nullable=False)
    outcome = Column(String(20), default="noop")  # open, dca, close, noop, error
    confidence = Column(Float, default=0.0)
    size_pct = Column(Float, default=0.0)
    reasoning = Column(Text, default="")

    used_llm = Column(Boolean, default=False)
    budget_limited = Column(Boolean, default=False)
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    cost_usd = Column(Float, default=0.0)

    session = relationship("ArenaSession", back_populates="decisions")

    def __repr__(self):
        return f"<ArenaDecision(agent={self.agent_id}, tick={self.tick}, action={self.action})>"
