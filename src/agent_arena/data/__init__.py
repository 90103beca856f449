from .events import ArenaEvent, EventType, Importance, create_event
from .event_bus import EventBus, EventStream, StreamMessage
from .market_data import Candle, KrakenPriceFeed, MarketDataCache, MarketSnapshot

__all__ = [
    "ArenaEvent",
    "EventType",
    "Importance",
    "create_event",
    "EventBus",
    "EventStream",
    "StreamMessage",
    "Candle",
    "KrakenPriceFeed",
    "MarketDataCache",
    "MarketSnapshot"
]
