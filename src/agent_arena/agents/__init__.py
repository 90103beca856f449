"""
Agent layer for the arena.

This package provides everything an agent needs before and during a session:

- AgentConfig / AgentState / AgentDecision: core agent types
- Archetype catalogue and RosterGenerator for building a roster
- DecisionEngine: rule tier plus optional LLM tier
- SpendBudget: shared USD budget for LLM calls
- OpenRouterClient: LLM completions via OpenRouter
- TechnicalAnalyzer: indicators and signals from candles
"""

from .agent_interface import AgentConfig, AgentDecision, AgentState, ArenaAction, Position, StrategyParams
from .archetypes import ARCHETYPES, get_archetype
from .budget import SpendBudget
from .decision_engine import DecisionEngine
from .fallback import FallbackResult, with_fallback
from .llm_client import Completion, OpenRouterClient
from .roster import RosterGenerator, RosterResult
from .technical_analysis import MarketSignal, TechnicalAnalyzer, TechnicalIndicators

__all__ = [
    "AgentConfig",
    "AgentDecision",
    "AgentState",
    "ArenaAction",
    "Position",
    "StrategyParams",
    "ARCHETYPES",
    "get_archetype",
    "SpendBudget",
    "DecisionEngine",
    "FallbackResult",
    "with_fallback",
    "Completion",
    "OpenRouterClient",
    "RosterGenerator",
    "RosterResult",
    "MarketSignal",
    "TechnicalAnalyzer",
    "TechnicalIndicators"
]
