"""Typed errors raised at the market-data boundary."""

from typing import Optional


class FeedError(Exception):
    """Base class for market-data failures that the feed recovers from."""


class HistoryFetchError(FeedError):
    """Historical fetch failed (HTTP, transport, timeout or parse error).

    Distinct from an empty result, which is returned as an empty list.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        rate_limited: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status = status
        self.rate_limited = rate_limited
        self.retry_after = retry_after


class FeedConnectionError(FeedError):
    """Live subscription failed or ended."""


class MalformedCandleError(ValueError):
    """Candle payload is missing fields or violates OHLCV sanity."""
