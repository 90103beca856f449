"""
Roster generation.

The AI path asks the LLM once for a themed cast of agents with concrete
strategies; the classic path draws from the static archetype catalogue.
Any AI failure falls back to the classic roster, so callers always get a
full roster.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import ArenaSettings
from ..exceptions import RosterGenerationFailure
from .agent_interface import (
    AVATAR_SHAPES,
    COMMENTARY_TRIGGERS,
    REGIMES,
    AgentConfig,
    DecisionMode,
    StrategyParams,
)
from .archetypes import build_classic_roster
from .fallback import with_fallback
from .llm_client import LLMClient, estimate_cost, extract_json
from .prompts import PromptLibrary, get_prompts, render

logger = logging.getLogger(__name__)

CLASSIC_THEME = "Classic Arena"
CLASSIC_COMMENTARY = "The usual suspects step into the ring. Eight styles, one market, no mercy."
MAX_NAME_CHARS = 40

ROSTER_SCHEMA: Dict[str, Any] = {
    "title": "agent_roster",
    "type": "object",
    "properties": {
        "theme": {"type": "string"},
        "master_commentary": {"type": "string"},
        "agents": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "personality": {"type": "string"},
                    "trading_philosophy": {"type": "string"},
                    "primary_indicators": {"type": "array", "items": {"type": "string"}},
                    "market_regime_preference": {"type": "object"},
                    "commentary_templates": {"type": "object"},
                    "strategy": {"type": "object"},
                },
                "required": ["name", "personality", "strategy"],
            },
        },
    },
    "required": ["theme", "agents"],
}


@dataclass
class RosterResult:
    agents: List[AgentConfig]
    theme: str
    master_commentary: str
    source: str  # ai, classic
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    fallback_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def _clamp_regime(value: Any) -> float:
    try:
        return max(-1.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


class RosterGenerator:
    """Produces the agent configs for a session before it starts."""

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        settings: Optional[ArenaSettings] = None,
        prompts: Optional[PromptLibrary] = None,
        rng: Optional[random.Random] = None,
    ):
        self.llm = llm
        self.settings = settings or ArenaSettings()
        self.prompts = prompts or get_prompts()
        self.rng = rng or random.Random()

    async def generate(self, config, market_context: Optional[str] = None) -> RosterResult:
        """Roster for a SessionConfig; never raises for LLM trouble."""
        if not config.use_master_agent:
            return self.classic(config)
        if self.llm is None:
            result = self.classic(config)
            result.fallback_reason = "no LLM configured"
            return result

        usage = {"tokens_in": 0, "tokens_out": 0, "cost_usd": 0.0}

        async def ai_roster() -> RosterResult:
            return await self._generate_ai(config, market_context, usage)

        async def classic_roster() -> RosterResult:
            return self.classic(config)

        def accept(result: RosterResult) -> Optional[str]:
            if len(result.agents) < config.agent_count:
                return f"invalid roster: {len(result.agents)} of {config.agent_count} agents"
            return None

        outcome = await with_fallback(ai_roster, classic_roster, label="Roster generation", accept=accept)
        result = outcome.value
        if outcome.used_fallback:
            result.fallback_reason = outcome.reason
            # the failed AI call was still paid for
            result.tokens_in = usage["tokens_in"]
            result.tokens_out = usage["tokens_out"]
            result.cost_usd = usage["cost_usd"]
        return result

    def classic(self, config) -> RosterResult:
        agents = build_classic_roster(
            config.agent_count,
            archetype_ids=tuple(config.archetype_ids or ()),
            rng=self.rng,
            prompts=self.prompts,
        )
        logger.info(f"Classic roster: {', '.join(a.name for a in agents)}")
        return RosterResult(
            agents=agents,
            theme=CLASSIC_THEME,
            master_commentary=CLASSIC_COMMENTARY,
            source="classic",
        )

    async def _generate_ai(self, config, market_context: Optional[str], usage: Dict[str, Any]) -> RosterResult:
        variables = {
            "count": config.agent_count,
            "pair": config.pair,
            "market_context": market_context or "unknown",
            "hours": f"{config.max_duration_hours:g}",
            "leverage": f"{config.leverage:g}",
        }
        system = render(self.prompts.template("roster.system"), variables)
        prompt = render(self.prompts.template("roster.user"), variables)

        completion = await self.llm.complete(
            prompt,
            ROSTER_SCHEMA,
            model=config.model_id,
            system=system,
            max_tokens=self.settings.roster_max_tokens,
            temperature=0.9,
        )
        usage["tokens_in"] = completion.tokens_in
        usage["tokens_out"] = completion.tokens_out
        usage["cost_usd"] = estimate_cost(config.model_id, completion.tokens_in, completion.tokens_out)

        raw = completion.structured or extract_json(completion.text)
        if not raw:
            raise RosterGenerationFailure("roster reply is not valid JSON")
        raw_agents = raw.get("agents")
        if not isinstance(raw_agents, list) or not raw_agents:
            raise RosterGenerationFailure("roster reply contains no agents")

        warnings: List[str] = []
        agents: List[AgentConfig] = []
        names = set()
        for raw_agent in raw_agents[:config.agent_count]:
            if not isinstance(raw_agent, dict):
                warnings.append("skipped non-object agent entry")
                continue
            agent = self._parse_agent(raw_agent, len(agents), config.max_duration_hours, names, warnings)
            agents.append(agent)

        logger.info(
            f"AI roster '{raw.get('theme', '')}': {len(agents)} agents, "
            f"{completion.tokens_in} in / {completion.tokens_out} out tokens, ${usage['cost_usd']:.4f}"
        )
        return RosterResult(
            agents=agents,
            theme=str(raw.get("theme") or "The Arena"),
            master_commentary=str(raw.get("master_commentary") or ""),
            source="ai",
            tokens_in=completion.tokens_in,
            tokens_out=completion.tokens_out,
            cost_usd=usage["cost_usd"],
            warnings=warnings,
        )

    def _parse_agent(
        self,
        raw: Dict[str, Any],
        index: int,
        session_hours: float,
        names: set,
        warnings: List[str],
    ) -> AgentConfig:
        name = str(raw.get("name") or f"Agent {index + 1}").strip()[:MAX_NAME_CHARS]
        base, suffix = name, 2
        while name in names:
            name = f"{base} {suffix}"
            suffix += 1
        names.add(name)

        regime = raw.get("market_regime_preference")
        regime = regime if isinstance(regime, dict) else {}

        templates: Dict[str, List[str]] = {}
        raw_templates = raw.get("commentary_templates")
        if isinstance(raw_templates, dict):
            for trigger in COMMENTARY_TRIGGERS:
                lines = raw_templates.get(trigger)
                if isinstance(lines, list):
                    lines = [line for line in lines if isinstance(line, str) and line]
                    if lines:
                        templates[trigger] = lines

        indicators = raw.get("primary_indicators")
        if not isinstance(indicators, list):
            indicators = ["RSI_15m", "MACD_1h"]

        raw_strategy = raw.get("strategy") if isinstance(raw.get("strategy"), dict) else {}
        strategy, errors, strategy_warnings = StrategyParams.from_raw(
            raw_strategy, session_hours=session_hours, max_size_pct=self.settings.max_size_pct
        )
        if errors:
            logger.warning(f"Agent '{name}' strategy corrected: {errors}")
            warnings.extend(f"{name}: {e}" for e in errors)
        if strategy_warnings:
            logger.info(f"Agent '{name}' strategy warnings: {strategy_warnings[:5]}")

        return AgentConfig(
            name=name,
            personality=str(raw.get("personality") or "A mysterious trader with unknown motivations."),
            archetype_id=str(raw.get("archetype_id") or f"generated_{index}"),
            avatar_shape=AVATAR_SHAPES[index % len(AVATAR_SHAPES)],
            color_index=index,
            trading_philosophy=str(raw.get("trading_philosophy") or "Trade hard, trade often."),
            market_regime_preference={r: _clamp_regime(regime.get(r)) for r in REGIMES},
            primary_indicators=tuple(str(i) for i in indicators),
            commentary_templates=templates,
            decision_mode=DecisionMode.HYBRID,
            strategy=strategy,
        )
