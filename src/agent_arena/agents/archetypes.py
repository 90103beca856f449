"""
Static archetype catalogue.

Eight trading personalities that differ in timeframe, sizing, holding time,
averaging down and the market regimes they like. Persona text and
commentary live in prompts.yaml; the numbers live here.
"""

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .agent_interface import AgentConfig, DecisionMode, StrategyParams
from .prompts import PromptLibrary, get_prompts


@dataclass(frozen=True)
class Archetype:
    id: str
    name: str
    avatar_shape: str
    color_index: int
    margin_pct_range: Tuple[float, float]
    max_hold_hours: float
    max_dca_count: int
    regime_preferences: Dict[str, float]
    primary_indicators: Tuple[str, ...]
    strategy: StrategyParams


ARCHETYPES: Dict[str, Archetype] = {
    "scalper": Archetype(
        id="scalper",
        name="The Knife",
        avatar_shape="hexagon",
        color_index=0,
        margin_pct_range=(5, 8),
        max_hold_hours=1,
        max_dca_count=0,
        regime_preferences={"trending": -0.2, "ranging": 0.8, "volatile": 0.9},
        primary_indicators=("RSI_5m", "Volume_5m", "RSI_15m", "BB_5m"),
        strategy=StrategyParams(
            timeframe="5m", min_entry_confidence=55, cautious_margin_pct=5, full_margin_pct=8,
            max_dca_count=0, max_hold_hours=1, take_profit_pct=2.5,
            oversold_rsi=25, overbought_rsi=75, volume_spike_ratio=1.8,
            signal_weights={"trend": 0.3, "momentum": 1.0, "rsi": 1.5, "bollinger": 1.2, "volume": 1.2},
        ),
    ),
    "momentum": Archetype(
        id="momentum",
        name="The Surfer",
        avatar_shape="diamond",
        color_index=1,
        margin_pct_range=(10, 15),
        max_hold_hours=6,
        max_dca_count=1,
        regime_preferences={"trending": 0.7, "ranging": -0.5, "volatile": 0.4},
        primary_indicators=("MACD_15m", "Volume_15m", "RSI_15m", "MACD_1h", "EMA_15m"),
        strategy=StrategyParams(
            timeframe="15m", min_entry_confidence=50, cautious_margin_pct=10, full_margin_pct=15,
            max_dca_count=1, max_hold_hours=6, take_profit_pct=5,
            volume_spike_ratio=2.0,
            signal_weights={"trend": 1.0, "momentum": 1.8, "rsi": 0.4, "bollinger": 0.2, "volume": 1.0},
        ),
    ),
    "mean_reversion": Archetype(
        id="mean_reversion",
        name="The Professor",
        avatar_shape="circle",
        color_index=2,
        margin_pct_range=(8, 12),
        max_hold_hours=12,
        max_dca_count=2,
        regime_preferences={"trending": -0.6, "ranging": 0.9, "volatile": 0.1},
        primary_indicators=("BB_1h", "RSI_1h", "RSI_15m", "BB_15m"),
        strategy=StrategyParams(
            timeframe="1h", min_entry_confidence=45, cautious_margin_pct=8, full_margin_pct=12,
            max_dca_count=2, max_hold_hours=12, take_profit_pct=4,
            oversold_rsi=30, overbought_rsi=70,
            signal_weights={"trend": 0.2, "momentum": 0.3, "rsi": 1.6, "bollinger": 1.8, "volume": 0.3},
        ),
    ),
    "trend_follower": Archetype(
        id="trend_follower",
        name="The General",
        avatar_shape="triangle",
        color_index=3,
        margin_pct_range=(15, 20),
        max_hold_hours=16,
        max_dca_count=3,
        regime_preferences={"trending": 1.0, "ranging": -0.7, "volatile": -0.2},
        primary_indicators=("EMA_4h", "EMA_1h", "MACD_4h", "Volume_1h"),
        strategy=StrategyParams(
            timeframe="4h", min_entry_confidence=50, cautious_margin_pct=15, full_margin_pct=20,
            max_dca_count=3, max_hold_hours=16, take_profit_pct=8,
            signal_weights={"trend": 2.0, "momentum": 1.0, "rsi": 0.2, "bollinger": 0.1, "volume": 0.6},
        ),
    ),
    "breakout": Archetype(
        id="breakout",
        name="The Sniper",
        avatar_shape="square",
        color_index=4,
        margin_pct_range=(12, 18),
        max_hold_hours=4,
        max_dca_count=0,
        regime_preferences={"trending": 0.3, "ranging": 0.2, "volatile": 1.0},
        primary_indicators=("Volume_15m", "BB_15m", "ATR_15m", "MACD_15m"),
        strategy=StrategyParams(
            timeframe="15m", min_entry_confidence=60, cautious_margin_pct=12, full_margin_pct=18,
            max_dca_count=0, max_hold_hours=4, take_profit_pct=6,
            volume_spike_ratio=2.2,
            signal_weights={"trend": 0.6, "momentum": 1.2, "rsi": 0.2, "bollinger": 0.8, "volume": 2.0},
        ),
    ),
    "contrarian": Archetype(
        id="contrarian",
        name="The Rebel",
        avatar_shape="pentagon",
        color_index=5,
        margin_pct_range=(5, 10),
        max_hold_hours=8,
        max_dca_count=1,
        regime_preferences={"trending": -0.9, "ranging": 0.5, "volatile": 0.6},
        primary_indicators=("RSI_1h", "RSI_15m", "Volume_1h", "BB_1h"),
        strategy=StrategyParams(
            timeframe="1h", min_entry_confidence=55, cautious_margin_pct=5, full_margin_pct=10,
            max_dca_count=1, max_hold_hours=8, take_profit_pct=5,
            oversold_rsi=20, overbought_rsi=80,
            signal_weights={"trend": 1.2, "momentum": 1.0, "rsi": 0.5, "bollinger": 0.3, "volume": 0.5},
            contrarian=True,
        ),
    ),
    "degen": Archetype(
        id="degen",
        name="The Gambler",
        avatar_shape="octagon",
        color_index=6,
        margin_pct_range=(15, 20),
        max_hold_hours=2,
        max_dca_count=2,
        regime_preferences={"trending": 0.4, "ranging": -0.3, "volatile": 1.0},
        primary_indicators=("Volume_5m", "MACD_5m", "ATR_5m"),
        strategy=StrategyParams(
            timeframe="5m", min_entry_confidence=40, cautious_margin_pct=15, full_margin_pct=20,
            max_dca_count=2, max_hold_hours=2, take_profit_pct=10,
            volume_spike_ratio=1.5,
            signal_weights={"trend": 0.5, "momentum": 1.5, "rsi": 0.3, "bollinger": 0.3, "volume": 1.5},
        ),
    ),
    "whale": Archetype(
        id="whale",
        name="The Whale",
        avatar_shape="star",
        color_index=7,
        margin_pct_range=(10, 14),
        max_hold_hours=24,
        max_dca_count=3,
        regime_preferences={"trending": 0.6, "ranging": 0.3, "volatile": -0.6},
        primary_indicators=("EMA_4h", "RSI_4h", "Volume_4h"),
        strategy=StrategyParams(
            timeframe="4h", min_entry_confidence=65, cautious_margin_pct=10, full_margin_pct=14,
            max_dca_count=3, max_hold_hours=24, take_profit_pct=12,
            signal_weights={"trend": 1.5, "momentum": 0.6, "rsi": 1.0, "bollinger": 0.5, "volume": 0.4},
        ),
    ),
}


def get_archetype(archetype_id: str) -> Optional[Archetype]:
    return ARCHETYPES.get(archetype_id)


def build_agent_config(
    archetype: Archetype,
    prompts: Optional[PromptLibrary] = None,
    decision_mode: DecisionMode = DecisionMode.HYBRID,
    color_index: Optional[int] = None,
) -> AgentConfig:
    """Turn an archetype into a ready-to-run agent config."""
    prompts = prompts or get_prompts()
    persona = prompts.persona(archetype.id)
    return AgentConfig(
        name=archetype.name,
        personality=persona.get("personality", ""),
        archetype_id=archetype.id,
        avatar_shape=archetype.avatar_shape,
        color_index=archetype.color_index if color_index is None else color_index,
        trading_philosophy=persona.get("philosophy", ""),
        market_regime_preference=dict(archetype.regime_preferences),
        primary_indicators=archetype.primary_indicators,
        commentary_templates=prompts.archetype_commentary(archetype.id),
        decision_mode=decision_mode,
        strategy=archetype.strategy,
    )


def build_classic_roster(
    count: int,
    archetype_ids: Sequence[str] = (),
    rng=None,
    prompts: Optional[PromptLibrary] = None,
) -> List[AgentConfig]:
    """
    Pick ``count`` archetypes: explicit ids first, then a random draw from the rest.

    Unknown ids are skipped. Deterministic when every slot is covered by
    explicit ids, or when ``rng`` is seeded.
    """
    rng = rng or random.Random()
    chosen: List[str] = []
    for archetype_id in archetype_ids:
        if archetype_id in ARCHETYPES and archetype_id not in chosen:
            chosen.append(archetype_id)

    remaining = [a for a in ARCHETYPES if a not in chosen]
    rng.shuffle(remaining)
    chosen.extend(remaining[:max(0, count - len(chosen))])

    return [build_agent_config(ARCHETYPES[a], prompts) for a in chosen[:count]]
