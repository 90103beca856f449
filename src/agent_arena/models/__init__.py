"""
Agent Arena Database Models

- ArenaSession: session checkpoints
- ArenaAgent: per-agent config and latest state
- ArenaDecision: decision log
- ArenaPosition: closed positions per agent
- ArenaStrategy: strategies extracted from finished agents
"""

from .base import Base
from .session import ArenaSession
from .agent import ArenaAgent
from .decision import ArenaDecision
from .position import ArenaPosition
from .strategy import ArenaStrategy

__all__ = [
    "Base",
    "ArenaSession",
    "ArenaAgent",
    "ArenaDecision",
    "ArenaPosition",
    "ArenaStrategy",
]
