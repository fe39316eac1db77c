"""WebSocket kline stream using the Binance public market streams."""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Tuple

import websockets
from websockets.exceptions import WebSocketException

from core.config import Settings, settings as default_settings
from core.helpers import candle_from_mapping
from core.logging_utils import get_logger
from core.models import Candle
from datafeeds.errors import FeedConnectionError, MalformedCandleError

logger = get_logger(__name__)

KlineUpdate = Tuple[Candle, bool]


def candle_from_kline(message: Any) -> Optional[KlineUpdate]:
    """
    Decode a kline event into (candle, is_closed).

    Accepts raw-stream events and combined-stream envelopes
    ({"stream": ..., "data": {...}}). Returns None for non-kline frames such
    as subscription acks; raises MalformedCandleError for broken klines.
    """
    if not isinstance(message, dict):
        return None
    data = message.get("data", message)
    if not isinstance(data, dict) or data.get("e") != "kline":
        return None

    k = data.get("k")
    if not isinstance(k, dict):
        raise MalformedCandleError("kline event without a 'k' object")

    is_closed = bool(k.get("x", False))
    candle = candle_from_mapping(
        {
            "time": k.get("t"),
            "open": k.get("o"),
            "high": k.get("h"),
            "low": k.get("l"),
            "close": k.get("c"),
            "volume": k.get("v"),
        },
        is_closed=is_closed,
    )
    return candle, is_closed


class BinanceKlineStream:
    """Live candle source: `connect()` yields an async iterator of kline updates."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.base_url = self.settings.binance_ws_url.rstrip("/")
        self.frames_skipped = 0

    def url_for(self, symbol: str, interval: str) -> str:
        return f"{self.base_url}/{symbol.lower()}@kline_{interval}"

    @asynccontextmanager
    async def connect(self, symbol: str, interval: str) -> AsyncIterator[AsyncIterator[KlineUpdate]]:
        url = self.url_for(symbol, interval)
        try:
            async with websockets.connect(
                url,
                open_timeout=self.settings.ws_open_timeout_seconds,
                ping_interval=20,
            ) as ws:
                logger.info("[FEED] WebSocket connected: %s", url)
                yield self._updates(ws)
        except (WebSocketException, OSError) as e:
            raise FeedConnectionError(f"kline stream failed: {e}") from e

    async def _updates(self, ws) -> AsyncIterator[KlineUpdate]:
        async for raw in ws:
            try:
                update = candle_from_kline(json.loads(raw))
            except json.JSONDecodeError:
                self.frames_skipped += 1
                logger.warning("[FEED] Skipping undecodable frame")
                continue
            except MalformedCandleError as e:
                self.frames_skipped += 1
                logger.warning("[FEED] Skipping malformed kline: %s", e)
                continue
            if update is not None:
                yield update
