"""Typed data models for the signal pipeline."""

from core.models.candle import BufferChange, Candle, CandleBuffer
from core.models.indicators import IndicatorSnapshot
from core.models.regime import MarketRegime, RegimeAnalysis, RegimeTransition
from core.models.signal import (
    Action,
    Bias,
    PositionSizeResult,
    SignalComponent,
    TradingSignal,
)

__all__ = [
    "Action",
    "Bias",
    "BufferChange",
    "Candle",
    "CandleBuffer",
    "IndicatorSnapshot",
    "MarketRegime",
    "PositionSizeResult",
    "RegimeAnalysis",
    "RegimeTransition",
    "SignalComponent",
    "TradingSignal",
]
