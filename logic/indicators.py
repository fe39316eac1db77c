"""
Indicator Math

Pure indicator functions plus incremental calculators for streaming candles.

Every batch function is a fold of the matching incremental calculator, so
computing a series one bar at a time gives bit-identical results to a single
pass over the same bars.

Indicators:
- EMA (seeded by the SMA of the first `period` values)
- RSI (Wilder smoothing of average gain/loss)
- ATR (Wilder smoothing of true range)
- Bollinger Bands (SMA +/- k population std dev)
- Directional movement and volume ratio helpers
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from core.models import Candle


def sma(values: Sequence[float], period: int) -> Optional[float]:
    """Simple average of the last `period` values, None if too short."""
    if period <= 0 or len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / period


def true_range(high: float, low: float, prev_close: Optional[float] = None) -> float:
    """True range; the first bar has no previous close and degenerates to high - low."""
    if prev_close is None:
        return high - low
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def directional_movement(
    high: float, low: float, prev_high: float, prev_low: float
) -> Tuple[float, float]:
    """Return (+DM, -DM) for one step."""
    up_move = high - prev_high
    down_move = prev_low - low
    plus_dm = up_move if (up_move > down_move and up_move > 0) else 0.0
    minus_dm = down_move if (down_move > up_move and down_move > 0) else 0.0
    return plus_dm, minus_dm


def volume_ratio(volumes: Sequence[float], lookback: int = 20, include_current: bool = False) -> float:
    """
    Current volume relative to its recent average.

    By default the average covers the `lookback - 1` bars before the current
    one; with `include_current` it covers the last `lookback` bars. Returns a
    neutral 1.0 when history is short or the average is zero.
    """
    if lookback < 2 or len(volumes) < lookback:
        return 1.0
    current = volumes[-1]
    if include_current:
        window = volumes[-lookback:]
    else:
        window = volumes[-lookback:-1]
    avg = sum(window) / len(window)
    if avg <= 0:
        return 1.0
    return current / avg


class EMA:
    """Incremental exponential moving average."""

    def __init__(self, period: int):
        if period <= 0:
            raise ValueError(f"EMA period must be positive, got {period}")
        self.period = period
        self.k = 2 / (period + 1)
        self._seed: List[float] = []
        self.value: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return self.value is not None

    def update(self, price: float) -> Optional[float]:
        if self.value is None:
            self._seed.append(price)
            if len(self._seed) == self.period:
                self.value = sum(self._seed) / self.period
                self._seed = []
            return self.value
        self.value = (price - self.value) * self.k + self.value
        return self.value


class WilderRSI:
    """Incremental RSI with Wilder smoothing."""

    def __init__(self, period: int = 14):
        if period <= 0:
            raise ValueError(f"RSI period must be positive, got {period}")
        self.period = period
        self._prev_close: Optional[float] = None
        self._gains: List[float] = []
        self._losses: List[float] = []
        self.avg_gain: Optional[float] = None
        self.avg_loss: Optional[float] = None
        self.value: Optional[float] = None

    def update(self, close: float) -> Optional[float]:
        prev = self._prev_close
        self._prev_close = close
        if prev is None:
            return None

        change = close - prev
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0

        if self.avg_gain is None:
            self._gains.append(gain)
            self._losses.append(loss)
            if len(self._gains) < self.period:
                return None
            self.avg_gain = sum(self._gains) / self.period
            self.avg_loss = sum(self._losses) / self.period
            self._gains = []
            self._losses = []
        else:
            self.avg_gain = (self.avg_gain * (self.period - 1) + gain) / self.period
            self.avg_loss = (self.avg_loss * (self.period - 1) + loss) / self.period

        self.value = rsi_from_averages(self.avg_gain, self.avg_loss)
        return self.value


def rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    """RSI from smoothed averages; zero average loss is 100, flat input included."""
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


class ATR:
    """Incremental average true range with Wilder smoothing."""

    def __init__(self, period: int = 14):
        if period <= 0:
            raise ValueError(f"ATR period must be positive, got {period}")
        self.period = period
        self._prev_close: Optional[float] = None
        self._seed: List[float] = []
        self.value: Optional[float] = None

    def update(self, high: float, low: float, close: float) -> Optional[float]:
        tr = true_range(high, low, self._prev_close)
        self._prev_close = close
        if self.value is None:
            self._seed.append(tr)
            if len(self._seed) == self.period:
                self.value = sum(self._seed) / self.period
                self._seed = []
            return self.value
        self.value = (self.value * (self.period - 1) + tr) / self.period
        return self.value


# ==================== Batch passes ====================

def ema_series(values: Sequence[float], period: int) -> List[Optional[float]]:
    calc = EMA(period)
    return [calc.update(v) for v in values]


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """Latest EMA value, None until `period` values exist."""
    calc = EMA(period)
    for v in values:
        calc.update(v)
    return calc.value


def rsi_series(closes: Sequence[float], period: int = 14) -> List[Optional[float]]:
    calc = WilderRSI(period)
    return [calc.update(c) for c in closes]


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Latest RSI value, None until `period + 1` closes exist."""
    calc = WilderRSI(period)
    for c in closes:
        calc.update(c)
    return calc.value


def atr_series(candles: Sequence[Candle], period: int = 14) -> List[Optional[float]]:
    calc = ATR(period)
    return [calc.update(c.high, c.low, c.close) for c in candles]


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Latest ATR value, None until `period` candles exist."""
    calc = ATR(period)
    for c in candles:
        calc.update(c.high, c.low, c.close)
    return calc.value


def bollinger_bands(
    closes: Sequence[float], period: int = 20, num_std: float = 2.0
) -> Optional[Tuple[float, float, float]]:
    """Return (upper, middle, lower) over the last `period` closes."""
    if period <= 0 or len(closes) < period:
        return None
    window = np.asarray(closes[-period:], dtype=float)
    middle = float(np.mean(window))
    std = float(np.std(window))
    return middle + num_std * std, middle, middle - num_std * std
