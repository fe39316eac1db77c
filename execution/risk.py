"""Risk management - ATR position sizing and sizing validation."""

import math
from typing import Optional, Sequence, Tuple

from core.config import Settings, settings as default_settings
from core.logging_utils import get_logger
from core.models import Action, Candle, MarketRegime, PositionSizeResult
from logic import indicators as ind

logger = get_logger(__name__)

REGIME_RISK_MULTIPLIERS = {
    "strong-trend": 1.5,
    "weak-trend": 0.75,
    "ranging": 0.5,
}


def confidence_multiplier(confidence: float) -> float:
    """Scale risk by signal confidence (0-100)."""
    if confidence >= 80:
        return 1.2
    if confidence >= 60:
        return 1.0
    if confidence >= 40:
        return 0.8
    return 0.5


def regime_multiplier(regime: MarketRegime) -> float:
    return REGIME_RISK_MULTIPLIERS.get(regime.trend_class, 1.0)


class PositionSizer:
    """
    Volatility-scaled position sizing.

    Stop sits `atr_stop_mult` ATRs against the trade; risk is the base
    percent scaled by regime and confidence; take-profit is placed at
    `min_rr_ratio` times the stop distance. When ATR is unavailable the
    sizer takes a fixed-percent stop with reduced risk instead of failing.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def calculate(
        self,
        entry_price: float,
        action: Action,
        regime: MarketRegime,
        confidence: float,
        candles: Sequence[Candle] = (),
        atr: Optional[float] = None,
        account_balance: Optional[float] = None,
    ) -> PositionSizeResult:
        """Size a BUY/SELL at `entry_price`; `atr` overrides the candle-derived ATR."""
        if action is Action.HOLD:
            raise ValueError("cannot size a HOLD decision")
        if not (math.isfinite(entry_price) and entry_price > 0):
            raise ValueError(f"entry price must be positive, got {entry_price!r}")

        s = self.settings
        balance = s.account_balance if account_balance is None else account_balance

        if atr is None:
            atr = self.atr_from_candles(candles)
        if atr is None or not math.isfinite(atr) or atr <= 0:
            logger.info("[RISK] ATR unavailable, using %.1f%% fallback stop", s.fallback_stop_pct * 100)
            return self._fallback(entry_price, action, balance)

        risk_pct = s.base_risk_pct * regime_multiplier(regime) * confidence_multiplier(confidence)
        risk_amount = balance * risk_pct
        stop_distance = atr * s.atr_stop_mult
        return self._build(entry_price, action, stop_distance, risk_amount, risk_pct * 100)

    def atr_from_candles(self, candles: Sequence[Candle]) -> Optional[float]:
        """ATR over the candles, None unless there are `period + 1` of them."""
        period = self.settings.atr_period
        if len(candles) < period + 1:
            return None
        return ind.atr(candles, period)

    def _fallback(self, entry_price: float, action: Action, balance: float) -> PositionSizeResult:
        s = self.settings
        stop_distance = entry_price * s.fallback_stop_pct
        risk_amount = balance * s.fallback_risk_pct
        return self._build(
            entry_price,
            action,
            stop_distance,
            risk_amount,
            s.fallback_risk_pct * 100,
            used_fallback=True,
        )

    def _build(
        self,
        entry_price: float,
        action: Action,
        stop_distance: float,
        risk_amount: float,
        max_risk_percent: float,
        used_fallback: bool = False,
    ) -> PositionSizeResult:
        sign = 1 if action is Action.BUY else -1
        profit_distance = stop_distance * self.settings.min_rr_ratio
        stop_loss = entry_price - sign * stop_distance
        take_profit = entry_price + sign * profit_distance

        risk_per_unit = abs(entry_price - stop_loss)
        position_size = risk_amount / risk_per_unit if risk_per_unit > 0 else 0.0
        rr = abs(take_profit - entry_price) / risk_per_unit if risk_per_unit > 0 else 0.0

        return PositionSizeResult(
            position_size=position_size,
            risk_amount=risk_amount,
            stop_loss=stop_loss,
            take_profit=take_profit,
            risk_reward_ratio=rr,
            max_account_risk_percent=max_risk_percent,
            used_fallback=used_fallback,
        )


def validate_position(
    result: PositionSizeResult,
    account_balance: float,
    entry_price: float,
    max_position_pct: float = 1.0,
    min_rr: float = 2.0,
    tolerance: float = 1e-9,
) -> Tuple[bool, str]:
    """
    Check a sizing result against account limits.

    Returns (ok, reason). A failure means "do not execute"; it never raises.
    """
    if not (result.position_size > 0 and math.isfinite(result.position_size)):
        return False, "position size is not positive"

    position_value = result.position_size * entry_price
    max_value = account_balance * max_position_pct
    if position_value > max_value:
        return False, f"position value {position_value:.2f} exceeds max {max_value:.2f}"

    if result.risk_reward_ratio < min_rr - tolerance:
        return False, f"reward:risk {result.risk_reward_ratio:.2f} below {min_rr:.2f}"

    return True, ""
