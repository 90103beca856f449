from .scoring import AgentRanking, SessionTitle, calculate_rars, compute_session_titles, rank_agents
from .badges import BADGES, Badge, check_badges
from .session import EndReason, Session, SessionConfig, SessionHandle, SessionStatus, SessionSummary
from .strategies import ExtractedStrategy, extract_strategy, strategy_rating

__all__ = [
    "AgentRanking",
    "SessionTitle",
    "calculate_rars",
    "compute_session_titles",
    "rank_agents",
    "BADGES",
    "Badge",
    "check_badges",
    "EndReason",
    "Session",
    "SessionConfig",
    "SessionHandle",
    "SessionStatus",
    "SessionSummary",
    "ExtractedStrategy",
    "extract_strategy",
    "strategy_rating",
]
