"""Candle primitives and rolling buffer utilities."""

from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional


@dataclass(frozen=True)
class Candle:
    """OHLCV candle keyed by its open time in epoch milliseconds."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_closed: bool = True

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_green(self) -> bool:
        return self.close >= self.open

    def with_closed(self, is_closed: bool) -> "Candle":
        return replace(self, is_closed=is_closed)


class BufferChange(Enum):
    APPENDED = "appended"
    REPLACED = "replaced"
    REJECTED = "rejected"


class CandleBuffer:
    """
    Bounded, time-ordered candle buffer.

    Invariants: `time` values are unique and strictly increasing; the oldest
    entry is dropped once `max_size` is exceeded. Only the tail may be
    replaced, and only while it is still in progress.
    """

    def __init__(self, max_size: int = 200):
        self.max_size = max_size
        self._candles: deque[Candle] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self):
        return iter(self._candles)

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    @property
    def newest_closed_time(self) -> Optional[int]:
        for candle in reversed(self._candles):
            if candle.is_closed:
                return candle.time
        return None

    @property
    def last_price(self) -> float:
        return self._candles[-1].close if self._candles else 0.0

    def upsert(self, candle: Candle) -> BufferChange:
        """Append a newer candle or replace the in-progress tail with the same time."""
        last = self.last
        if last is None or candle.time > last.time:
            self._candles.append(candle)
            return BufferChange.APPENDED
        if candle.time == last.time and not last.is_closed:
            self._candles[-1] = candle
            return BufferChange.REPLACED
        return BufferChange.REJECTED

    def replace_all(self, candles: Iterable[Candle]) -> None:
        """Full-state replace; keeps the newest entry per time, ordered."""
        by_time: dict[int, Candle] = {}
        for candle in candles:
            by_time[candle.time] = candle
        self._candles = deque(
            (by_time[t] for t in sorted(by_time)),
            maxlen=self.max_size,
        )

    def snapshot(self) -> tuple[Candle, ...]:
        return tuple(self._candles)

    def closed(self) -> list[Candle]:
        return [c for c in self._candles if c.is_closed]

    def clear(self) -> None:
        self._candles.clear()
