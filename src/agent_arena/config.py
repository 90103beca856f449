"""Configuration and environment variable validation for the agent arena."""

import os
import logging
from dataclasses import dataclass, field
from typing import Tuple

logger = logging.getLogger(__name__)


class Config:
    """Configuration class that loads and validates environment variables."""

    def __init__(self):
        self.load_config()

    def load_config(self):
        """Load and validate all environment variables."""
        self.environment = os.getenv("ENVIRONMENT", "development").lower()
        self.is_production = self.environment == "production"
        self.is_development = self.environment == "development"

        # Database configuration
        self.database_url = os.getenv("DATABASE_URL")
        self.db_echo = os.getenv("DB_ECHO", "false").lower() == "true"
        self.db_pool_size = int(os.getenv("DB_POOL_SIZE", "10"))

        # LLM configuration
        self.openrouter_api_key = os.getenv("OPENROUTER_API_KEY")
        self.default_model = os.getenv("ARENA_DEFAULT_MODEL", "gpt-4o-mini")

        # Service
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.api_host = os.getenv("API_HOST", "0.0.0.0")
        self.api_port = int(os.getenv("API_PORT", "8000"))

        self._validate_config()

    def _validate_config(self):
        """Validate configuration and log warnings for potential issues."""
        if self.is_production:
            if not self.database_url:
                raise ValueError("DATABASE_URL must be set in production")

            if not self.openrouter_api_key:
                raise ValueError("OPENROUTER_API_KEY must be set in production")
        else:
            logger.info("Running in development mode")
            if not self.database_url:
                logger.warning("DATABASE_URL not set - sessions are kept in memory only")
            if not self.openrouter_api_key:
                logger.warning("OPENROUTER_API_KEY not set - agents fall back to rule-based decisions")


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


@dataclass
class ArenaSettings:
    """Tunable simulation policy for the arena engine"""

    # Event delivery
    event_buffer_size: int = 500
    subscriber_queue_size: int = 1000
    heartbeat_seconds: float = 15.0

    # Durability cadence (rounds)
    checkpoint_every_rounds: int = 5
    decision_flush_every_rounds: int = 10

    # Fees (fraction of notional)
    taker_fee_rate: float = 0.0026
    margin_open_fee_rate: float = 0.0002
    rollover_fee_rate: float = 0.0002
    rollover_period_hours: float = 4.0

    # Margin model
    maintenance_margin_rate: float = 0.005
    dust_threshold: float = 0.01
    min_margin: float = 1.0
    min_size_pct: float = 1.0
    max_size_pct: float = 20.0
    fatal_liquidation: bool = False
    health_drawdown_weight: float = 0.5

    # Session bounds
    min_starting_capital: float = 10.0
    max_starting_capital: float = 1_000_000.0
    min_decision_interval_ms: int = 100
    max_duration_hours: float = 168.0

    # LLM usage
    decision_max_tokens: int = 400
    decision_temperature: float = 0.4
    commentary_max_tokens: int = 120
    commentary_llm_probability: float = 1.0
    roster_max_tokens: int = 4000
    budget_warning_ratio: float = 0.8

    # Scheduler
    stop_grace_seconds: float = 30.0
    candle_intervals: Tuple[str, ...] = field(default=("5m", "15m", "1h", "4h"))

    @classmethod
    def from_env(cls) -> 'ArenaSettings':
        """Create settings from environment variables"""
        intervals = os.getenv('ARENA_CANDLE_INTERVALS')
        return cls(
            event_buffer_size=int(os.getenv('ARENA_EVENT_BUFFER_SIZE', 500)),
            subscriber_queue_size=int(os.getenv('ARENA_SUBSCRIBER_QUEUE_SIZE', 1000)),
            heartbeat_seconds=float(os.getenv('ARENA_HEARTBEAT_SECONDS', 15.0)),
            checkpoint_every_rounds=int(os.getenv('ARENA_CHECKPOINT_EVERY_ROUNDS', 5)),
            decision_flush_every_rounds=int(os.getenv('ARENA_DECISION_FLUSH_EVERY_ROUNDS', 10)),
            taker_fee_rate=float(os.getenv('ARENA_TAKER_FEE_RATE', 0.0026)),
            margin_open_fee_rate=float(os.getenv('ARENA_MARGIN_OPEN_FEE_RATE', 0.0002)),
            rollover_fee_rate=float(os.getenv('ARENA_ROLLOVER_FEE_RATE', 0.0002)),
            rollover_period_hours=float(os.getenv('ARENA_ROLLOVER_PERIOD_HOURS', 4.0)),
            maintenance_margin_rate=float(os.getenv('ARENA_MAINTENANCE_MARGIN_RATE', 0.005)),
            dust_threshold=float(os.getenv('ARENA_DUST_THRESHOLD', 0.01)),
            min_margin=float(os.getenv('ARENA_MIN_MARGIN', 1.0)),
            min_size_pct=float(os.getenv('ARENA_MIN_SIZE_PCT', 1.0)),
            max_size_pct=float(os.getenv('ARENA_MAX_SIZE_PCT', 20.0)),
            fatal_liquidation=_env_bool('ARENA_FATAL_LIQUIDATION', False),
            health_drawdown_weight=float(os.getenv('ARENA_HEALTH_DRAWDOWN_WEIGHT', 0.5)),
            min_starting_capital=float(os.getenv('ARENA_MIN_STARTING_CAPITAL', 10.0)),
            max_starting_capital=float(os.getenv('ARENA_MAX_STARTING_CAPITAL', 1_000_000.0)),
            min_decision_interval_ms=int(os.getenv('ARENA_MIN_DECISION_INTERVAL_MS', 100)),
            max_duration_hours=float(os.getenv('ARENA_MAX_DURATION_HOURS', 168.0)),
            decision_max_tokens=int(os.getenv('ARENA_DECISION_MAX_TOKENS', 400)),
            decision_temperature=float(os.getenv('ARENA_DECISION_TEMPERATURE', 0.4)),
            commentary_max_tokens=int(os.getenv('ARENA_COMMENTARY_MAX_TOKENS', 120)),
            commentary_llm_probability=float(os.getenv('ARENA_COMMENTARY_LLM_PROBABILITY', 1.0)),
            roster_max_tokens=int(os.getenv('ARENA_ROSTER_MAX_TOKENS', 4000)),
            budget_warning_ratio=float(os.getenv('ARENA_BUDGET_WARNING_RATIO', 0.8)),
            stop_grace_seconds=float(os.getenv('ARENA_STOP_GRACE_SECONDS', 30.0)),
            candle_intervals=tuple(intervals.split(",")) if intervals else ("5m", "15m", "1h", "4h"),
        )


def setup_logging(level: str = "INFO"):
    """Configure root logging for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Global config instance
config = Config()
