"""
Round execution for arena sessions.

This module provides the per-agent financial runtime, the tick scheduler
that drives rounds and the detector for dramatic moments.
"""

from .agent_runtime import AgentRuntime, FeeSchedule, TradeResult
from .event_triggers import ArenaEventDetector
from .scheduler import TickScheduler

__all__ = [
    'AgentRuntime',
    'FeeSchedule',
    'TradeResult',
    'ArenaEventDetector',
    'TickScheduler'
]
