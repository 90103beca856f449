"""
Arena session checkpoint model.

One row per session, overwritten at every checkpoint. The full session
record is kept as JSON next to a few columns used for listing.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Integer, JSON, String
from sqlalchemy.orm import relationship

from .base import Base


class ArenaSession(Base):
    __tablename__ = "arena_sessions"

    id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, index=True)
    pair = Column(String(20), nullable=False)
    theme = Column(String(255), default="")
    tick = Column(Integer, default=0)
    created_at = Column(Float, nullable=False, index=True)  # epoch ms
    started_at = Column(Float)
    ended_at = Column(Float)
    end_reason = Column(String(20))
    winner_name = Column(String(255))
    total_cost_usd = Column(Float, default=0.0)

    data = Column(JSON, nullable=False)

    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    agents = relationship("ArenaAgent", back_populates="session", cascade="all, delete-orphan")
    decisions = relationship("ArenaDecision", back_populates="session", cascade="all, delete-orphan")

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "pair": self.pair,
            "theme": self.theme,
            "tick": self.tick,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason,
            "winner_name": self.winner_name,
            "total_cost_usd": self.total_cost_usd,
        }

    def __repr__(self):
        return f"<ArenaSession(id={self.id}, status={self.status}, tick={self.tick})>"
