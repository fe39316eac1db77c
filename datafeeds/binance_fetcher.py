"""Binance REST kline fetcher with a timeout and request-weight limiting."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, List, Optional, Tuple

import requests

from core.config import Settings, settings as default_settings
from core.helpers import candle_from_mapping, finite_float, validate_candles
from core.logging_utils import get_logger
from core.models import Candle
from datafeeds.errors import HistoryFetchError, MalformedCandleError

logger = get_logger(__name__)

# Binance caps klines at 1000 per request; each call costs 2 weight
_MAX_LIMIT = 1000
_KLINES_WEIGHT = 2.0
_RATE_LIMIT_STATUSES = (418, 429)


class _TokenBucket:
    """Simple token bucket for request weight (Binance allows 1200/min)."""

    def __init__(self, rps: float = 20.0, burst: float = 40.0):
        self.capacity = burst
        self.tokens = burst
        self.rps = rps
        self.last_refill = time.monotonic()

    def acquire(self, cost: float = 1.0):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rps)
        self.last_refill = now
        wait = max(0.0, cost - self.tokens) / self.rps if self.tokens < cost else 0.0
        if wait > 0:
            time.sleep(wait)
            self.tokens = max(0.0, self.tokens - cost + wait * self.rps)
        else:
            self.tokens -= cost


def parse_kline_row(row: Any) -> Candle:
    """Binance kline row: [open time, open, high, low, close, volume, close time, ...]."""
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise MalformedCandleError(f"unexpected kline row: {row!r}")
    return candle_from_mapping(
        {
            "time": row[0],
            "open": row[1],
            "high": row[2],
            "low": row[3],
            "close": row[4],
            "volume": row[5],
        },
        is_closed=True,
    )


class BinanceHistory:
    """
    Historical candle source backed by GET /klines.

    The blocking HTTP call runs in a worker thread under `asyncio.wait_for`,
    so a hung request fails with HistoryFetchError instead of stalling the
    event loop. Only closed candles are returned, oldest first.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or default_settings
        self.base_url = self.settings.binance_base_url.rstrip("/")
        self.timeout = self.settings.fetch_timeout_seconds
        self._session = session or requests.Session()
        self._clock = clock
        self._bucket = _TokenBucket()

    async def fetch(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        try:
            rows = await asyncio.wait_for(
                asyncio.to_thread(self._get_klines, symbol, interval, limit),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise HistoryFetchError(f"kline fetch timed out after {self.timeout}s") from None
        return self._parse(rows)

    def _get_klines(self, symbol: str, interval: str, limit: int) -> Any:
        params = {
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": max(1, min(int(limit), _MAX_LIMIT)),
        }
        self._bucket.acquire(_KLINES_WEIGHT)
        try:
            resp = self._session.get(f"{self.base_url}/klines", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise HistoryFetchError(f"kline request failed: {e}") from e

        used = resp.headers.get("X-MBX-USED-WEIGHT-1M")
        if used:
            logger.debug("[FEED] Binance used weight (1m): %s", used)

        if resp.status_code in _RATE_LIMIT_STATUSES:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            logger.warning(
                "[FEED] Binance rate limit (%d), retry after %s",
                resp.status_code,
                retry_after if retry_after is not None else "n/a",
            )
            raise HistoryFetchError(
                f"rate limited: status {resp.status_code}",
                status=resp.status_code,
                rate_limited=True,
                retry_after=retry_after,
            )
        if not resp.ok:
            raise HistoryFetchError(
                f"kline request failed: status {resp.status_code} {resp.text[:200]}",
                status=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise HistoryFetchError("kline response is not JSON", status=resp.status_code) from e

    def _parse(self, rows: Any) -> List[Candle]:
        if not isinstance(rows, list):
            raise HistoryFetchError(f"expected a list of klines, got {type(rows).__name__}")
        if not rows:
            return []

        parsed: List[Tuple[Candle, Any]] = []
        malformed = 0
        for row in rows:
            try:
                candle = parse_kline_row(row)
            except MalformedCandleError as e:
                malformed += 1
                logger.warning("[FEED] Skipping malformed kline: %s", e)
                continue
            parsed.append((candle, row[6] if len(row) > 6 else None))

        if malformed and malformed == len(rows):
            raise HistoryFetchError(f"all {malformed} klines were malformed")

        parsed.sort(key=lambda item: item[0].time)
        if parsed and _still_forming(*parsed[-1], now_ms=int(self._clock() * 1000)):
            logger.debug("[FEED] Dropping forming kline at %d", parsed[-1][0].time)
            parsed.pop()
        return validate_candles([candle for candle, _ in parsed])


def _still_forming(candle: Candle, close_time: Any, now_ms: int) -> bool:
    """The newest kline counts as forming until the local clock is a full bar past its close."""
    if isinstance(close_time, bool) or not isinstance(close_time, (int, float)):
        return False
    bar_ms = max(close_time - candle.time + 1, 0)
    return close_time >= now_ms - bar_ms


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    seconds = finite_float(value, default=-1.0) if value else -1.0
    return seconds if seconds >= 0 else None
