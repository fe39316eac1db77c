"""Validation helpers to keep candle and indicator values finite and well-shaped."""

import math
from typing import Any, Mapping

from core.models import Candle
from datafeeds.errors import MalformedCandleError

_PRICE_FIELDS = ("open", "high", "low", "close")


def finite_float(value: Any, default: float = 0.0) -> float:
    """Return a finite float or a default fallback."""
    try:
        fval = float(value)
        if math.isfinite(fval):
            return fval
    except (TypeError, ValueError):
        pass
    return default


def _require_finite(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise MalformedCandleError(f"{name} is not numeric: {value!r}")
    try:
        fval = float(value)
    except (TypeError, ValueError):
        raise MalformedCandleError(f"{name} is not numeric: {value!r}") from None
    if not math.isfinite(fval):
        raise MalformedCandleError(f"{name} is not finite: {value!r}")
    return fval


def validate_candle(candle: Candle) -> Candle:
    """Return the candle if it is sane OHLCV data, else raise MalformedCandleError."""
    if not isinstance(candle, Candle):
        raise MalformedCandleError(f"not a candle: {type(candle).__name__}")
    if isinstance(candle.time, bool) or not isinstance(candle.time, int) or candle.time < 0:
        raise MalformedCandleError(f"time must be a non-negative int: {candle.time!r}")
    for name in _PRICE_FIELDS:
        if _require_finite(name, getattr(candle, name)) <= 0:
            raise MalformedCandleError(f"{name} must be positive: {getattr(candle, name)!r}")
    if _require_finite("volume", candle.volume) < 0:
        raise MalformedCandleError(f"volume must be >= 0: {candle.volume!r}")
    if candle.high < candle.low:
        raise MalformedCandleError(f"high {candle.high} < low {candle.low}")
    if not (candle.low <= candle.open <= candle.high and candle.low <= candle.close <= candle.high):
        raise MalformedCandleError("open/close outside the high-low range")
    return candle


def candle_from_mapping(data: Mapping[str, Any], is_closed: bool = True) -> Candle:
    """Build a validated candle from a dict with time/open/high/low/close/volume keys."""
    missing = [k for k in ("time", *_PRICE_FIELDS, "volume") if k not in data]
    if missing:
        raise MalformedCandleError(f"missing fields: {', '.join(missing)}")
    try:
        ts = int(data["time"])
    except (TypeError, ValueError):
        raise MalformedCandleError(f"time is not an integer: {data['time']!r}") from None
    candle = Candle(
        time=ts,
        open=_require_finite("open", data["open"]),
        high=_require_finite("high", data["high"]),
        low=_require_finite("low", data["low"]),
        close=_require_finite("close", data["close"]),
        volume=_require_finite("volume", data["volume"]),
        is_closed=is_closed,
    )
    return validate_candle(candle)
