"""Collectors for streaming and historical market data."""

from datafeeds.collectors.kline_stream import BinanceKlineStream, candle_from_kline
from datafeeds.collectors.market_feed import HistorySource, LiveSource, MarketDataFeed

__all__ = [
    "BinanceKlineStream",
    "HistorySource",
    "LiveSource",
    "MarketDataFeed",
    "candle_from_kline",
]
