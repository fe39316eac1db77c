"""Market regime definitions."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MarketRegime(Enum):
    STRONG_TREND_UP = "strong-trend-up"
    STRONG_TREND_DOWN = "strong-trend-down"
    WEAK_TREND_UP = "weak-trend-up"
    WEAK_TREND_DOWN = "weak-trend-down"
    RANGING = "ranging"

    @property
    def is_trending(self) -> bool:
        return self is not MarketRegime.RANGING

    @property
    def direction(self) -> int:
        """+1 up, -1 down, 0 ranging."""
        if self in (MarketRegime.STRONG_TREND_UP, MarketRegime.WEAK_TREND_UP):
            return 1
        if self in (MarketRegime.STRONG_TREND_DOWN, MarketRegime.WEAK_TREND_DOWN):
            return -1
        return 0

    @property
    def trend_class(self) -> str:
        """Direction-free view: strong-trend, weak-trend or ranging."""
        if self in (MarketRegime.STRONG_TREND_UP, MarketRegime.STRONG_TREND_DOWN):
            return "strong-trend"
        if self in (MarketRegime.WEAK_TREND_UP, MarketRegime.WEAK_TREND_DOWN):
            return "weak-trend"
        return "ranging"


@dataclass(frozen=True)
class RegimeAnalysis:
    """Regime classification plus the indicator readings behind it."""
    regime: MarketRegime
    confidence: int                 # Display confidence 10-95
    adx: float = 0.0
    plus_di: float = 0.0
    minus_di: float = 0.0
    rsi: float = 50.0
    volume_ratio: float = 1.0
    ema_slope: float = 0.0          # % change of the EMA between bars
    atr: float = 0.0
    timestamp: int = 0
    regime_started_at: Optional[int] = None
    is_ready: bool = False


@dataclass(frozen=True)
class RegimeTransition:
    timestamp: int
    regime: MarketRegime
