"""Indicator snapshot published by the indicator engine."""

from dataclasses import dataclass, fields
from typing import Optional


@dataclass(frozen=True)
class IndicatorSnapshot:
    """All indicators computed together from one window of closed candles."""
    current_price: float
    timestamp: int
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    rsi: Optional[float] = None
    bollinger_upper: Optional[float] = None
    bollinger_middle: Optional[float] = None
    bollinger_lower: Optional[float] = None
    atr: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return all(
            getattr(self, f.name) is not None
            for f in fields(self)
        )

