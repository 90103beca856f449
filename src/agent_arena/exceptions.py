"""Error taxonomy for the arena."""


class ArenaError(Exception):
    """Base class for every error raised by the arena."""


class InvalidConfig(ArenaError):
    """Session configuration or agent roster failed validation."""


class SessionConflict(ArenaError):
    """A lifecycle operation is not allowed in the current session state."""


class AgentDecisionFailure(ArenaError):
    """A single agent's decision step failed; isolated to that agent and round."""

    def __init__(self, agent_id: str, message: str):
        super().__init__(f"Agent {agent_id}: {message}")
        self.agent_id = agent_id


class BudgetExhausted(ArenaError):
    """The spend budget cannot cover another LLM call."""


class FeedStale(ArenaError):
    """The price feed failed and no previous price is available."""


class PersistenceFailure(ArenaError):
    """A durable checkpoint could not be written."""


class RosterGenerationFailure(ArenaError):
    """AI roster generation failed or produced an invalid roster."""
