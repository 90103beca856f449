"""
Arena commentary.

Most lines come from templates at zero cost: the agent's own lines for a
trigger 80% of the time when it has any, otherwise the generic pool. Deaths,
lead changes, face-offs and milestones may get a one-sentence LLM line,
paid from the session budget under the ``commentary`` key.
"""

import logging
import random
import re
from typing import Dict, List, Mapping, Optional, Sequence

from ..agents.agent_interface import AgentState
from ..agents.budget import SpendBudget
from ..agents.fallback import with_fallback
from ..agents.llm_client import LLMClient, estimate_cost, worst_case_cost
from ..agents.prompts import PromptLibrary, get_prompts, render
from ..config import ArenaSettings
from .events import ArenaEvent, EventType

logger = logging.getLogger(__name__)

COMMENTARY_KEY = "commentary"
AGENT_TEMPLATE_WEIGHT = 0.8
DRAMATIC_EVENTS = frozenset({
    EventType.AGENT_DEATH,
    EventType.LEAD_CHANGE,
    EventType.FACE_OFF,
    EventType.MILESTONE,
})

TRIGGER_FOR_EVENT: Dict[EventType, str] = {
    EventType.TRADE_OPEN: "on_entry",
    EventType.TRADE_DCA: "on_dca",
    EventType.AGENT_DEATH: "on_death",
    EventType.NEAR_DEATH: "on_near_death",
    EventType.COMEBACK: "on_comeback",
    EventType.HOT_STREAK: "on_hot_streak",
    EventType.FACE_OFF: "on_face_off",
    EventType.LEAD_CHANGE: "on_lead_change",
    EventType.BADGE_EARNED: "on_badge",
    EventType.MILESTONE: "on_milestone",
}

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def first_sentence(text: str) -> str:
    text = text.strip().strip('"').strip()
    return _SENTENCE_END.split(text, maxsplit=1)[0].strip() if text else ""


class CommentaryEngine:
    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        budget: Optional[SpendBudget] = None,
        model_id: str = "gpt-4o-mini",
        settings: Optional[ArenaSettings] = None,
        prompts: Optional[PromptLibrary] = None,
        rng: Optional[random.Random] = None,
    ):
        self.llm = llm
        self.budget = budget
        self.model_id = model_id
        self.settings = settings or ArenaSettings()
        self.prompts = prompts or get_prompts()
        self.rng = rng or random.Random()
        self.llm_calls = 0
        self.tokens_in = 0
        self.tokens_out = 0
        self.cost_usd = 0.0

    def line(
        self,
        trigger: str,
        variables: Mapping[str, object],
        agent_templates: Optional[Mapping[str, List[str]]] = None,
    ) -> str:
        """Template commentary for ``trigger``; unknown placeholders are left untouched."""
        own = list((agent_templates or {}).get(trigger) or [])
        generic = self.prompts.generic_commentary(trigger)

        if own and (not generic or self.rng.random() < AGENT_TEMPLATE_WEIGHT):
            pool = own
        else:
            pool = generic

        if not pool:
            return f"{variables.get('name', 'Agent')} makes a move."
        return render(self.rng.choice(pool), variables)

    def wants_llm(self, event: ArenaEvent) -> bool:
        return (
            self.llm is not None
            and event.type in DRAMATIC_EVENTS
            and self.rng.random() < self.settings.commentary_llm_probability
        )

    async def narrate(self, event: ArenaEvent, agents: Sequence[AgentState], template_line: str) -> str:
        """
        Commentary for an event: an LLM line for dramatic moments when the
        budget allows, the template line otherwise.
        """
        if not self.wants_llm(event):
            return template_line

        async def llm_line() -> str:
            return await self._llm_line(event, agents)

        async def template() -> str:
            return template_line

        result = await with_fallback(
            llm_line,
            template,
            label=f"Commentary for {event.type.value}",
            accept=lambda text: None if text else "empty reply",
        )
        return result.value

    async def _llm_line(self, event: ArenaEvent, agents: Sequence[AgentState]) -> str:
        variables = {
            "event_title": event.title,
            "event_detail": event.detail or event.title,
            "standings": self.standings(agents),
        }
        system = render(self.prompts.template("commentary.system"), variables)
        prompt = render(self.prompts.template("commentary.user"), variables)
        max_tokens = self.settings.commentary_max_tokens

        reservation = None
        if self.budget is not None:
            estimate = worst_case_cost(self.model_id, prompt, max_tokens, system)
            reservation = await self.budget.require(COMMENTARY_KEY, estimate)

        try:
            completion = await self.llm.complete(
                prompt,
                model=self.model_id,
                system=system,
                max_tokens=max_tokens,
                temperature=0.9,
            )
        except BaseException:
            if reservation is not None:
                await self.budget.release(reservation)
            raise

        cost = estimate_cost(self.model_id, completion.tokens_in, completion.tokens_out)
        if reservation is not None:
            await self.budget.settle(reservation, cost)
        self.llm_calls += 1
        self.tokens_in += completion.tokens_in
        self.tokens_out += completion.tokens_out
        self.cost_usd += cost
        return first_sentence(completion.text)

    @staticmethod
    def standings(agents: Sequence[AgentState]) -> str:
        rows = []
        for state in sorted(agents, key=lambda a: (a.rank or 999, a.registration_index)):
            vitals = "DEAD" if state.is_dead else f"{state.health:.0f}% HP"
            rows.append(f"{state.rank}. {state.name} - {vitals}, {state.pnl_percent:+.1f}%")
        return "; ".join(rows)

