"""
Technical analysis for arena agents.

Indicator calculations over candle series and the per-strategy directional
signal the rule tier trades on.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .agent_interface import StrategyParams

logger = logging.getLogger(__name__)

MIN_CANDLES = 20
TRENDING_SPREAD_PCT = 0.3
VOLATILE_ATR_PCT = 1.5


@dataclass
class TechnicalIndicators:
    """Latest indicator values; None where history is too short."""
    # Trend
    ema_20: Optional[float] = None
    ema_50: Optional[float] = None
    trend: Optional[str] = None  # BULLISH, BEARISH, NEUTRAL

    # Momentum
    rsi: Optional[float] = None
    rsi_signal: Optional[str] = None  # OVERSOLD, OVERBOUGHT, NEUTRAL
    macd_histogram: Optional[float] = None

    # Volatility
    atr: Optional[float] = None
    bollinger_position: Optional[float] = None  # 0 = lower band, 1 = upper band

    # Volume
    volume_ratio: Optional[float] = None


@dataclass
class MarketSignal:
    direction: str  # LONG, SHORT, NEUTRAL
    confidence: float
    regime: str  # trending, ranging, volatile
    indicators: TechnicalIndicators = field(default_factory=TechnicalIndicators)
    components: Dict[str, float] = field(default_factory=dict)
    reason: str = ""

    @classmethod
    def neutral(cls, reason: str) -> 'MarketSignal':
        return cls(direction="NEUTRAL", confidence=0.0, regime="ranging", reason=reason)


class TechnicalAnalyzer:
    """Indicator calculations on price series (newest last)."""

    @staticmethod
    def calculate_ema(prices: Sequence[float], period: int) -> float:
        if len(prices) < period:
            return float(np.mean(prices)) if len(prices) else 0.0

        multiplier = 2 / (period + 1)
        ema = float(np.mean(prices[:period]))
        for price in prices[period:]:
            ema = (price - ema) * multiplier + ema
        return ema

    @staticmethod
    def calculate_ema_series(prices: Sequence[float], period: int) -> List[float]:
        if not len(prices):
            return []
        multiplier = 2 / (period + 1)
        series = [float(prices[0])]
        for price in prices[1:]:
            series.append((price - series[-1]) * multiplier + series[-1])
        return series

    @staticmethod
    def calculate_rsi(prices: Sequence[float], period: int = 14) -> float:
        """Wilder RSI (0-100); neutral 50 when there is not enough data."""
        if len(prices) < period + 1:
            return 50.0

        deltas = np.diff(prices)
        gains = np.where(deltas > 0, deltas, 0)
        losses = np.where(deltas < 0, -deltas, 0)

        avg_gain = np.mean(gains[:period])
        avg_loss = np.mean(losses[:period])
        for i in range(period, len(gains)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period

        if avg_loss == 0:
            return 100.0 if avg_gain > 0 else 50.0

        rs = avg_gain / avg_loss
        return float(100 - (100 / (1 + rs)))

    @staticmethod
    def calculate_macd_histogram(
        prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9
    ) -> float:
        if len(prices) < slow:
            return 0.0
        fast_ema = TechnicalAnalyzer.calculate_ema_series(prices, fast)
        slow_ema = TechnicalAnalyzer.calculate_ema_series(prices, slow)
        macd_line = [f - s for f, s in zip(fast_ema, slow_ema)]
        signal_line = TechnicalAnalyzer.calculate_ema_series(macd_line, signal)
        return macd_line[-1] - signal_line[-1]

    @staticmethod
    def calculate_bollinger_position(prices: Sequence[float], period: int = 20, width: float = 2.0) -> float:
        """Where the last price sits in the band: 0 at the lower band, 1 at the upper."""
        if len(prices) < period:
            return 0.5
        window = np.asarray(prices[-period:], dtype=float)
        mean = window.mean()
        std = window.std()
        if std == 0:
            return 0.5
        lower, upper = mean - width * std, mean + width * std
        return float((prices[-1] - lower) / (upper - lower))

    @staticmethod
    def calculate_atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
        if len(highs) < period + 1 or len(lows) < period + 1 or len(closes) < period + 1:
            return 0.0

        true_ranges = []
        for i in range(1, len(closes)):
            high_low = highs[i] - lows[i]
            high_close = abs(highs[i] - closes[i - 1])
            low_close = abs(lows[i] - closes[i - 1])
            true_ranges.append(max(high_low, high_close, low_close))

        atr = float(np.mean(true_ranges[:period]))
        for tr in true_ranges[period:]:
            atr = (atr * (period - 1) + tr) / period
        return atr

    @staticmethod
    def trend_label(price: float, ema_fast: Optional[float], ema_slow: Optional[float]) -> Optional[str]:
        """BULLISH/BEARISH when price and both EMAs line up, NEUTRAL when they disagree."""
        if not ema_fast:
            return None
        if not ema_slow:
            return "BULLISH" if price > ema_fast else "BEARISH"
        if price > ema_fast > ema_slow:
            return "BULLISH"
        if price < ema_fast < ema_slow:
            return "BEARISH"
        return "NEUTRAL"

    @staticmethod
    def rsi_label(rsi: float, oversold: float, overbought: float) -> str:
        if rsi < oversold:
            return "OVERSOLD"
        if rsi > overbought:
            return "OVERBOUGHT"
        return "NEUTRAL"

    @staticmethod
    def analyze_market(
        closes: Sequence[float],
        highs: Sequence[float],
        lows: Sequence[float],
        volumes: Sequence[float],
        oversold_rsi: float = 30.0,
        overbought_rsi: float = 70.0,
    ) -> TechnicalIndicators:
        """Indicators that have enough history; the rest stay None."""
        result = TechnicalIndicators()
        count = len(closes)
        if count < 2:
            return result

        last = closes[-1]
        if count >= 20:
            result.ema_20 = TechnicalAnalyzer.calculate_ema(closes, 20)
            result.bollinger_position = TechnicalAnalyzer.calculate_bollinger_position(closes)
        if count >= 50:
            result.ema_50 = TechnicalAnalyzer.calculate_ema(closes, 50)
        result.trend = TechnicalAnalyzer.trend_label(last, result.ema_20, result.ema_50)

        if count >= 15:
            result.rsi = TechnicalAnalyzer.calculate_rsi(closes, 14)
            result.rsi_signal = TechnicalAnalyzer.rsi_label(result.rsi, oversold_rsi, overbought_rsi)
            result.atr = TechnicalAnalyzer.calculate_atr(highs, lows, closes, 14)
        if count >= 26:
            result.macd_histogram = TechnicalAnalyzer.calculate_macd_histogram(closes)

        recent_volume = np.asarray(volumes[-20:], dtype=float)
        if len(recent_volume) == 20 and recent_volume.mean() > 0:
            result.volume_ratio = float(recent_volume[-1] / recent_volume.mean())

        return result

    @staticmethod
    def classify_regime(indicators: TechnicalIndicators, price: float) -> str:
        if price <= 0:
            return "ranging"
        if indicators.atr and indicators.atr / price * 100 >= VOLATILE_ATR_PCT:
            return "volatile"
        if indicators.ema_20 and indicators.ema_50:
            spread_pct = abs(indicators.ema_20 - indicators.ema_50) / price * 100
            if spread_pct >= TRENDING_SPREAD_PCT:
                return "trending"
        return "ranging"

    @staticmethod
    def generate_signal(
        closes: Sequence[float],
        highs: Sequence[float],
        lows: Sequence[float],
        volumes: Sequence[float],
        strategy: StrategyParams,
    ) -> MarketSignal:
        """
        Weighted directional vote of trend, momentum, RSI, Bollinger and volume.

        Each component votes in [-1, 1] (positive = long). The weighted mean,
        scaled to [-100, 100], gives direction and confidence.
        """
        if len(closes) < MIN_CANDLES:
            return MarketSignal.neutral(f"Only {len(closes)} candles, need {MIN_CANDLES}")

        indicators = TechnicalAnalyzer.analyze_market(
            closes, highs, lows, volumes, strategy.oversold_rsi, strategy.overbought_rsi
        )
        price = closes[-1]
        components: Dict[str, float] = {}

        if indicators.trend == "BULLISH":
            components["trend"] = 1.0
        elif indicators.trend == "BEARISH":
            components["trend"] = -1.0
        elif indicators.ema_20 and indicators.ema_50:
            components["trend"] = 0.5 if indicators.ema_20 > indicators.ema_50 else -0.5
        else:
            components["trend"] = 0.0

        histogram = indicators.macd_histogram or 0.0
        components["momentum"] = max(-1.0, min(1.0, histogram / (price * 0.001))) if price else 0.0

        rsi = indicators.rsi if indicators.rsi is not None else 50.0
        if rsi < strategy.oversold_rsi:
            components["rsi"] = 1.0
        elif rsi > strategy.overbought_rsi:
            components["rsi"] = -1.0
        else:
            components["rsi"] = (50.0 - rsi) / 50.0 * 0.5

        band = indicators.bollinger_position if indicators.bollinger_position is not None else 0.5
        components["bollinger"] = max(-1.0, min(1.0, (0.5 - band) * 2))

        ratio = indicators.volume_ratio or 1.0
        if ratio >= strategy.volume_spike_ratio and components["momentum"] != 0:
            direction = 1.0 if components["momentum"] > 0 else -1.0
            components["volume"] = direction * min(1.0, ratio - 1.0)
        else:
            components["volume"] = 0.0

        weights = strategy.signal_weights
        total_weight = sum(weights.get(name, 0.0) for name in components)
        if total_weight <= 0:
            return MarketSignal.neutral("No signal weights")

        score = sum(components[name] * weights.get(name, 0.0) for name in components) / total_weight * 100
        if strategy.contrarian:
            score = -score

        if score > 0:
            direction = "LONG"
        elif score < 0:
            direction = "SHORT"
        else:
            direction = "NEUTRAL"

        strongest = max(components, key=lambda name: abs(components[name] * weights.get(name, 0.0)))
        return MarketSignal(
            direction=direction,
            confidence=min(100.0, abs(score)),
            regime=TechnicalAnalyzer.classify_regime(indicators, price),
            indicators=indicators,
            components=components,
            reason=f"{direction.lower()} bias led by {strongest}",
        )

    @staticmethod
    def format_analysis_text(symbol: str, current_price: float, indicators: TechnicalIndicators) -> str:
        """Compact indicator summary for decision prompts."""
        lines = [f"Technical Analysis for {symbol} at {current_price:.5f}:"]

        if indicators.trend:
            trend = f"Trend: {indicators.trend}"
            if indicators.ema_20:
                trend += f" (EMA20 {indicators.ema_20:.5f}"
                trend += f", EMA50 {indicators.ema_50:.5f})" if indicators.ema_50 else ")"
            lines.append(trend)
        if indicators.rsi is not None:
            lines.append(f"RSI(14): {indicators.rsi:.1f} - {indicators.rsi_signal}")
        if indicators.macd_histogram is not None:
            lines.append(f"MACD histogram: {indicators.macd_histogram:+.6f}")
        if indicators.bollinger_position is not None:
            lines.append(f"Bollinger position: {indicators.bollinger_position:.2f}")
        if indicators.atr:
            lines.append(f"ATR(14): {indicators.atr:.5f}")
        if indicators.volume_ratio:
            lines.append(f"Volume: {indicators.volume_ratio:.1f}x average")

        return "\n".join(lines)
