"""
Shared test fixtures for pytest
"""

import dataclasses
import json
import random
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from agent_arena.agents.agent_interface import AgentConfig, DecisionMode
from agent_arena.agents.archetypes import ARCHETYPES, build_agent_config
from agent_arena.agents.llm_client import Completion, LLMError
from agent_arena.competition.manager import SessionManager
from agent_arena.competition.session import SessionConfig, SessionStatus
from agent_arena.config import ArenaSettings, setup_logging
from agent_arena.data.market_data import Candle
from agent_arena.data.store import InMemorySessionStore
from agent_arena.exceptions import FeedStale

START_MS = 1_700_000_000_000.0
MINUTE_MS = 60_000.0

Reply = Union[str, Dict[str, Any], Exception, Callable[[str, Optional[Dict[str, Any]]], Any]]


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start_ms: float = START_MS):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float = MINUTE_MS) -> float:
        self.now += ms
        return self.now


class FakePriceFeed:
    """
    In-memory price feed.

    ``price`` is served as the ticker; ``candles`` maps interval to the list
    served for it. Setting ``fail`` makes every call raise FeedStale.
    """

    def __init__(self, price: float = 1.0):
        self.price = price
        self.candles: Dict[str, List[Candle]] = {}
        self.fail = False
        self.price_calls = 0

    async def get_current_price(self, pair: str) -> float:
        self.price_calls += 1
        if self.fail:
            raise FeedStale(f"feed down for {pair}")
        return self.price

    async def get_recent_candles(self, pair: str, interval: str) -> List[Candle]:
        if self.fail:
            raise FeedStale(f"feed down for {pair}")
        return list(self.candles.get(interval, []))


class FakeLLM:
    """
    Scripted LLM client.

    Replies are consumed in order, then ``default`` is repeated. A dict reply
    is returned as JSON (and as ``structured`` when a schema was passed), an
    exception is raised, a callable is called with (prompt, schema).
    """

    def __init__(
        self,
        replies: Optional[List[Reply]] = None,
        default: Reply = "Nothing to report.",
        tokens_in: int = 200,
        tokens_out: int = 50,
    ):
        self.replies = list(replies or [])
        self.default = default
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        *,
        model: str,
        system: Optional[str] = None,
        max_tokens: int = 400,
        temperature: float = 0.4,
    ) -> Completion:
        self.calls.append({
            "prompt": prompt,
            "schema": schema,
            "model": model,
            "system": system,
            "max_tokens": max_tokens,
        })
        reply = self.replies.pop(0) if self.replies else self.default
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(prompt, schema)
        if isinstance(reply, Exception):
            raise reply

        if isinstance(reply, dict):
            text = json.dumps(reply)
            structured = reply if schema is not None else None
        else:
            text = str(reply)
            structured = None
        return Completion(text=text, tokens_in=self.tokens_in, tokens_out=self.tokens_out, structured=structured)


def make_candles(closes: List[float], start_ms: float = START_MS, step_ms: float = 5 * MINUTE_MS) -> List[Candle]:
    """Candles with the given closes, a small range around each and flat volume."""
    return [
        Candle(
            time=int(start_ms + i * step_ms),
            open=close,
            high=close * 1.001,
            low=close * 0.999,
            close=close,
            volume=100.0,
        )
        for i, close in enumerate(closes)
    ]


def agent_config(
    archetype_id: str,
    decision_mode: DecisionMode = DecisionMode.RULES,
    name: Optional[str] = None,
) -> AgentConfig:
    config = build_agent_config(ARCHETYPES[archetype_id], decision_mode=decision_mode)
    if name is not None:
        config = dataclasses.replace(config, name=name)
    return config


def session_config(**overrides) -> SessionConfig:
    values = dict(
        pair="XRPEUR",
        agent_count=2,
        starting_capital=1000.0,
        decision_interval_ms=60_000,
        max_duration_hours=4.0,
        session_budget_usd=1.0,
        model_id="gpt-4o-mini",
        leverage=10.0,
        use_master_agent=False,
    )
    values.update(overrides)
    return SessionConfig(**values)


def llm_error(message: str = "upstream timeout") -> LLMError:
    return LLMError(message)


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Setup logging for all tests"""
    setup_logging("WARNING")


@pytest.fixture
def clock():
    """Clock pinned to a fixed epoch, advanced by hand"""
    return FakeClock()


@pytest.fixture
def feed():
    """Price feed quoting 1.0 with no candles"""
    return FakePriceFeed(price=1.0)


@pytest.fixture
def settings():
    """Arena settings with LLM commentary disabled for deterministic budgets"""
    return ArenaSettings(commentary_llm_probability=0.0)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest_asyncio.fixture
async def manager(feed, store, settings, clock):
    """SessionManager without an LLM; any active session is stopped afterwards"""
    arena = SessionManager(feed=feed, store=store, settings=settings, clock=clock, rng=random.Random(7))
    yield arena
    if arena.status in (SessionStatus.RUNNING, SessionStatus.PAUSED):
        await arena.stop()
