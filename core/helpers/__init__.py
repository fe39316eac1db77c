"""Shared helper utilities for consistency across the pipeline."""

from .validation import candle_from_mapping, finite_float, validate_candle
from .rest_validation import validate_candles

__all__ = [
    "candle_from_mapping",
    "finite_float",
    "validate_candle",
    "validate_candles",
]
