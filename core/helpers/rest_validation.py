"""Helpers to validate REST candle responses before buffering."""

from typing import List

from core.helpers.validation import validate_candle
from core.logging_utils import get_logger
from core.models import Candle
from datafeeds.errors import MalformedCandleError

logger = get_logger(__name__)


def validate_candles(candles: List[Candle]) -> List[Candle]:
    """Return a cleaned, strictly time-ordered list of closed candles.

    Malformed entries are dropped and logged; duplicate times keep the last
    occurrence.
    """
    if not candles:
        return []
    by_time: dict[int, Candle] = {}
    for candle in candles:
        try:
            validate_candle(candle)
        except MalformedCandleError as e:
            logger.warning("[FEED] Dropping malformed historical candle: %s", e)
            continue
        by_time[candle.time] = candle if candle.is_closed else candle.with_closed(True)
    return [by_time[t] for t in sorted(by_time)]
