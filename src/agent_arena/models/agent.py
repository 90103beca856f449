"""
Arena agent checkpoint model: the agent's config and latest financial state.
"""

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship

from .base import Base


class ArenaAgent(Base):
    __tablename__ = "arena_agents"

    id = Column(String(64), primary_key=True)
    session_id = Column(String(64), ForeignKey("arena_sessions.id"), nullable=False, index=True)
    registration_index = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    archetype_id = Column(String(64), nullable=False)

    # Denormalized for quick reads
    equity = Column(Float, nullable=False)
    rank = Column(Integer, default=0)
    status = Column(String(20), default="alive")
    is_dead = Column(Boolean, default=False)

    config = Column(JSON, nullable=False)
    state = Column(JSON, nullable=False)

    session = relationship("ArenaSession", back_populates="agents")
    positions = relationship("ArenaPosition", back_populates="agent", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ArenaAgent(name={self.name}, equity={self.equity:.2f}, status={self.status})>"
