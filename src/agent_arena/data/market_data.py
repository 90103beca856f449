import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import aiohttp

from ..exceptions import FeedStale

logger = logging.getLogger(__name__)

KRAKEN_PUBLIC_URL = "https://api.kraken.com/0/public"
KRAKEN_INTERVALS = {"1m": 1, "5m": 5, "15m": 15, "30m": 30, "1h": 60, "4h": 240, "1d": 1440}


@dataclass(frozen=True)
class Candle:
    time: int  # open time, epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float


class PriceFeed(Protocol):
    async def get_current_price(self, pair: str) -> float:
        ...

    async def get_recent_candles(self, pair: str, interval: str) -> List[Candle]:
        ...


@dataclass
class MarketSnapshot:
    """Market data shared by every agent for one round."""
    price: float
    timestamp: float
    candles: Dict[str, List[Candle]] = field(default_factory=dict)
    stale: bool = False
    error: Optional[str] = None

    def series(self, interval: str) -> Tuple[List[float], List[float], List[float], List[float]]:
        """Closes, highs, lows and volumes for ``interval`` (oldest first)."""
        candles = self.candles.get(interval, [])
        return (
            [c.close for c in candles],
            [c.high for c in candles],
            [c.low for c in candles],
            [c.volume for c in candles],
        )


def parse_ohlc(result: Dict) -> List[Candle]:
    """Kraken keys OHLC rows by its own pair name; ``last`` is the cursor."""
    data_key = next((k for k in result if k != "last"), None)
    if data_key is None:
        return []
    return [
        Candle(
            time=int(float(row[0]) * 1000),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[6]),
        )
        for row in result[data_key]
    ]


class KrakenPriceFeed:
    """
    Kraken public REST price feed.

    Responses are cached per endpoint and refreshed at most every
    ``min_refresh_seconds``. A failed refresh raises FeedStale even when an
    older value is cached; reusing the last price is the caller's decision,
    so staleness stays visible to MarketDataCache.
    """

    def __init__(self, min_refresh_seconds: float = 30.0, timeout: float = 10.0, base_url: str = KRAKEN_PUBLIC_URL):
        self.base_url = base_url
        self.min_refresh_seconds = min_refresh_seconds
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._cache: Dict[str, Tuple[float, object]] = {}

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _public_request(self, endpoint: str, params: Dict[str, object]) -> Dict:
        if not self.session:
            self.session = aiohttp.ClientSession()

        async with self.session.get(
            f"{self.base_url}/{endpoint}",
            params={k: str(v) for k, v in params.items()},
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as response:
            if response.status != 200:
                raise FeedStale(f"Kraken API error: {response.status}")
            data = await response.json()

        if data.get("error"):
            raise FeedStale(f"Kraken API error: {', '.join(data['error'])}")
        return data.get("result") or {}

    async def _cached(self, key: str, fetch):
        now = time.monotonic()
        cached = self._cache.get(key)
        if cached and now - cached[0] < self.min_refresh_seconds:
            return cached[1]
        try:
            value = await fetch()
        except (aiohttp.ClientError, asyncio.TimeoutError, FeedStale) as e:
            age = f"last good {now - cached[0]:.0f}s ago" if cached else "never fetched"
            logger.warning(f"Refresh of {key} failed ({age}): {e}")
            raise FeedStale(f"{key} unavailable: {e}") from e
        self._cache[key] = (now, value)
        return value

    async def get_current_price(self, pair: str) -> float:
        async def fetch() -> float:
            result = await self._public_request("Ticker", {"pair": pair})
            if not result:
                raise FeedStale(f"No ticker for {pair}")
            ticker = next(iter(result.values()))
            return float(ticker["c"][0])

        return await self._cached(f"ticker:{pair}", fetch)

    async def get_recent_candles(self, pair: str, interval: str) -> List[Candle]:
        minutes = KRAKEN_INTERVALS.get(interval)
        if minutes is None:
            raise ValueError(f"Unsupported candle interval: {interval}")

        async def fetch() -> List[Candle]:
            result = await self._public_request("OHLC", {"pair": pair, "interval": minutes})
            return parse_ohlc(result)

        return await self._cached(f"ohlc:{pair}:{interval}", fetch)


class MarketDataCache:
    """
    Fetches the price and candles once per round and tracks feed staleness.

    When the price fetch fails the last good price is reused and the snapshot
    is flagged stale. Without any good price the round cannot proceed.
    """

    def __init__(self, feed: PriceFeed, pair: str, intervals: Sequence[str] = ("5m", "15m", "1h", "4h")):
        self.feed = feed
        self.pair = pair
        self.intervals = tuple(intervals)
        self.last_price: Optional[float] = None
        self.last_error: Optional[str] = None
        self.stale = False
        self._candles: Dict[str, List[Candle]] = {}

    async def fetch_price(self) -> float:
        """Current price straight from the feed, raising FeedStale on failure."""
        try:
            price = float(await self.feed.get_current_price(self.pair))
        except FeedStale:
            raise
        except Exception as e:
            raise FeedStale(f"Price feed failed for {self.pair}: {e}") from e
        if price <= 0:
            raise FeedStale(f"Invalid price {price} for {self.pair}")
        self.last_price = price
        return price

    async def snapshot(self, now_ms: float) -> MarketSnapshot:
        results = await asyncio.gather(
            self.feed.get_current_price(self.pair),
            *(self.feed.get_recent_candles(self.pair, interval) for interval in self.intervals),
            return_exceptions=True,
        )
        price_result, candle_results = results[0], results[1:]

        for interval, candles in zip(self.intervals, candle_results):
            if isinstance(candles, BaseException):
                logger.warning(f"Candles {self.pair}/{interval} unavailable, reusing last: {candles}")
                continue
            self._candles[interval] = list(candles)

        error = None
        if isinstance(price_result, BaseException) or not price_result or float(price_result) <= 0:
            error = str(price_result) if isinstance(price_result, BaseException) else f"invalid price {price_result!r}"
            if self.last_price is None:
                raise FeedStale(f"No price available for {self.pair}: {error}")
            if not self.stale:
                logger.error(f"Price feed stale for {self.pair}, reusing {self.last_price}: {error}")
            self.stale = True
            self.last_error = error
        else:
            self.last_price = float(price_result)
            if self.stale:
                logger.info(f"Price feed for {self.pair} recovered")
            self.stale = False
            self.last_error = None

        return MarketSnapshot(
            price=self.last_price,
            timestamp=now_ms,
            candles={k: list(v) for k, v in self._candles.items()},
            stale=self.stale,
            error=error,
        )
