"""Confluence scoring for trade decisions.

Four independently evaluated components share a fixed point budget:

    EMA Crossover         3 pts   fast EMA crossed the slow EMA since the previous bar
    RSI Confirmation      2 pts   extremes in ranging markets, momentum band when trending
    Volume Spike          2 pts   volume >= 1.5x the trailing 20-bar average
    Bollinger Band Touch  2 pts   within 0.5% of a band; reversal when ranging,
                                  continuation when trending

Below the minimum score the decision is HOLD. Otherwise the active
components vote bullish/bearish and the majority wins; a tie is HOLD.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from core.config import Settings, settings as default_settings
from core.logging_utils import get_logger
from core.models import (
    Action,
    Bias,
    Candle,
    IndicatorSnapshot,
    MarketRegime,
    SignalComponent,
    TradingSignal,
)
from execution.risk import PositionSizer, validate_position
from logic import indicators as ind

logger = get_logger(__name__)

EMA_CROSSOVER = "EMA Crossover"
RSI_CONFIRMATION = "RSI Confirmation"
VOLUME_SPIKE = "Volume Spike"
BOLLINGER_TOUCH = "Bollinger Band Touch"

COMPONENT_POINTS = {
    EMA_CROSSOVER: 3,
    RSI_CONFIRMATION: 2,
    VOLUME_SPIKE: 2,
    BOLLINGER_TOUCH: 2,
}
MAX_SCORE = sum(COMPONENT_POINTS.values())


@dataclass(frozen=True)
class ScoringInputs:
    """Readings the components are evaluated against, from candles or snapshots."""
    price: float
    timestamp: int
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    prev_ema_fast: Optional[float] = None
    prev_ema_slow: Optional[float] = None
    rsi: Optional[float] = None
    volume_ratio: Optional[float] = None
    bar_bias: Bias = Bias.NEUTRAL
    bollinger_upper: Optional[float] = None
    bollinger_lower: Optional[float] = None
    atr: Optional[float] = None


@dataclass(frozen=True)
class ConfluenceResult:
    action: Action
    score: int
    max_score: int
    confidence: float
    reason: str
    components: tuple[SignalComponent, ...]
    bullish_votes: int = 0
    bearish_votes: int = 0

    @property
    def active(self) -> List[SignalComponent]:
        return [c for c in self.components if c.active]


# ==================== Components ====================

def evaluate_ema_crossover(
    prev_fast: Optional[float],
    prev_slow: Optional[float],
    fast: Optional[float],
    slow: Optional[float],
) -> SignalComponent:
    points = COMPONENT_POINTS[EMA_CROSSOVER]
    if None in (prev_fast, prev_slow, fast, slow):
        return SignalComponent(EMA_CROSSOVER, points, False, Bias.NEUTRAL, "Insufficient data for EMA crossover")

    if prev_fast <= prev_slow and fast > slow:
        return SignalComponent(EMA_CROSSOVER, points, True, Bias.BULLISH, "Fast EMA crossed above slow EMA")
    if prev_fast >= prev_slow and fast < slow:
        return SignalComponent(EMA_CROSSOVER, points, True, Bias.BEARISH, "Fast EMA crossed below slow EMA")
    return SignalComponent(EMA_CROSSOVER, points, False, Bias.NEUTRAL, "No EMA crossover")


def evaluate_rsi(rsi: Optional[float], regime: MarketRegime) -> SignalComponent:
    points = COMPONENT_POINTS[RSI_CONFIRMATION]
    if rsi is None:
        return SignalComponent(RSI_CONFIRMATION, points, False, Bias.NEUTRAL, "Insufficient data for RSI")

    if not regime.is_trending:
        if rsi > 70:
            return SignalComponent(RSI_CONFIRMATION, points, True, Bias.BEARISH, f"RSI overbought ({rsi:.1f})")
        if rsi < 30:
            return SignalComponent(RSI_CONFIRMATION, points, True, Bias.BULLISH, f"RSI oversold ({rsi:.1f})")
        return SignalComponent(RSI_CONFIRMATION, points, False, Bias.NEUTRAL, f"RSI neutral ({rsi:.1f})")

    # Trending: momentum band confirmation
    active = (45 < rsi < 80) or (20 < rsi < 55)
    if not active:
        return SignalComponent(RSI_CONFIRMATION, points, False, Bias.NEUTRAL, f"RSI outside momentum band ({rsi:.1f})")
    if rsi > 50:
        return SignalComponent(RSI_CONFIRMATION, points, True, Bias.BULLISH, f"RSI bullish momentum ({rsi:.1f})")
    return SignalComponent(RSI_CONFIRMATION, points, True, Bias.BEARISH, f"RSI bearish momentum ({rsi:.1f})")


def evaluate_volume(
    ratio: Optional[float], bar_bias: Bias = Bias.NEUTRAL, spike_ratio: float = 1.5
) -> SignalComponent:
    """A spike votes with the direction of the bar that printed it; a doji abstains."""
    points = COMPONENT_POINTS[VOLUME_SPIKE]
    if ratio is None:
        return SignalComponent(VOLUME_SPIKE, points, False, Bias.NEUTRAL, "Insufficient data for volume")
    if ratio >= spike_ratio:
        return SignalComponent(VOLUME_SPIKE, points, True, bar_bias, f"Volume spike ({ratio:.1f}x average)")
    return SignalComponent(VOLUME_SPIKE, points, False, Bias.NEUTRAL, f"Normal volume ({ratio:.1f}x average)")


def evaluate_bollinger(
    price: float,
    upper: Optional[float],
    lower: Optional[float],
    regime: MarketRegime,
    touch_pct: float = 0.005,
) -> SignalComponent:
    points = COMPONENT_POINTS[BOLLINGER_TOUCH]
    if upper is None or lower is None:
        return SignalComponent(BOLLINGER_TOUCH, points, False, Bias.NEUTRAL, "Insufficient data for Bollinger Bands")
    if upper <= lower:
        return SignalComponent(BOLLINGER_TOUCH, points, False, Bias.NEUTRAL, "Bollinger Bands have zero width")

    trending = regime.is_trending
    if price >= upper * (1 - touch_pct):
        bias = Bias.BULLISH if trending else Bias.BEARISH
        desc = "Price at upper band (trend strength)" if trending else "Price at upper band (potential reversal)"
        return SignalComponent(BOLLINGER_TOUCH, points, True, bias, desc)
    if price <= lower * (1 + touch_pct):
        bias = Bias.BEARISH if trending else Bias.BULLISH
        desc = "Price at lower band (trend weakness)" if trending else "Price at lower band (potential reversal)"
        return SignalComponent(BOLLINGER_TOUCH, points, True, bias, desc)
    return SignalComponent(BOLLINGER_TOUCH, points, False, Bias.NEUTRAL, "Price within Bollinger Bands")


def evaluate_components(
    inputs: ScoringInputs, regime: MarketRegime, settings: Optional[Settings] = None
) -> List[SignalComponent]:
    s = settings or default_settings
    return [
        evaluate_ema_crossover(inputs.prev_ema_fast, inputs.prev_ema_slow, inputs.ema_fast, inputs.ema_slow),
        evaluate_rsi(inputs.rsi, regime),
        evaluate_volume(inputs.volume_ratio, inputs.bar_bias, s.volume_spike_ratio),
        evaluate_bollinger(inputs.price, inputs.bollinger_upper, inputs.bollinger_lower, regime, s.band_touch_pct),
    ]


# ==================== Decision ====================

def _describe(components: Sequence[SignalComponent]) -> str:
    active = [c for c in components if c.active]
    if not active:
        return "no active components"
    return ", ".join(f"{c.name} ({c.bias.value})" for c in active)


def decide(
    components: Sequence[SignalComponent],
    min_score: int = 5,
    max_score: int = MAX_SCORE,
) -> ConfluenceResult:
    """Sum active points, gate on the threshold, then take the majority vote."""
    score = sum(c.points for c in components if c.active)
    bullish = sum(1 for c in components if c.active and c.bias is Bias.BULLISH)
    bearish = sum(1 for c in components if c.active and c.bias is Bias.BEARISH)
    confidence = 100 * score / max_score if max_score else 0.0
    labels = _describe(components)

    if score < min_score:
        action = Action.HOLD
        reason = f"Score {score}/{max_score} below {min_score}: {labels}"
    elif bullish > bearish:
        action = Action.BUY
        reason = f"Score {score}/{max_score} bullish {bullish}-{bearish}: {labels}"
    elif bearish > bullish:
        action = Action.SELL
        reason = f"Score {score}/{max_score} bearish {bearish}-{bullish}: {labels}"
    else:
        action = Action.HOLD
        reason = f"Score {score}/{max_score} split {bullish}-{bearish}: {labels}"

    return ConfluenceResult(
        action=action,
        score=score,
        max_score=max_score,
        confidence=confidence,
        reason=reason,
        components=tuple(components),
        bullish_votes=bullish,
        bearish_votes=bearish,
    )


# ==================== Inputs ====================

def bar_bias(candle: Candle) -> Bias:
    if candle.close > candle.open:
        return Bias.BULLISH
    if candle.close < candle.open:
        return Bias.BEARISH
    return Bias.NEUTRAL


def min_candles(settings: Optional[Settings] = None) -> int:
    """Candles needed to see a crossover: the slow EMA plus one prior bar."""
    s = settings or default_settings
    return s.ema_slow_period + 1


def inputs_from_candles(candles: Sequence[Candle], settings: Optional[Settings] = None) -> ScoringInputs:
    s = settings or default_settings
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    last = candles[-1]

    fast = ind.ema_series(closes, s.ema_fast_period)
    slow = ind.ema_series(closes, s.ema_slow_period)
    bands = ind.bollinger_bands(closes, s.bollinger_period, s.bollinger_std)
    ratio = None
    if len(volumes) >= s.volume_lookback:
        ratio = ind.volume_ratio(volumes, s.volume_lookback, include_current=True)

    return ScoringInputs(
        price=last.close,
        timestamp=last.time,
        ema_fast=fast[-1],
        ema_slow=slow[-1],
        prev_ema_fast=fast[-2] if len(fast) >= 2 else None,
        prev_ema_slow=slow[-2] if len(slow) >= 2 else None,
        rsi=ind.rsi(closes, s.rsi_period),
        volume_ratio=ratio,
        bar_bias=bar_bias(last),
        bollinger_upper=bands[0] if bands else None,
        bollinger_lower=bands[2] if bands else None,
    )


def inputs_from_snapshot(
    snapshot: IndicatorSnapshot,
    previous: Optional[IndicatorSnapshot] = None,
    volume_ratio: Optional[float] = None,
    bias: Bias = Bias.NEUTRAL,
) -> ScoringInputs:
    return ScoringInputs(
        price=snapshot.current_price,
        timestamp=snapshot.timestamp,
        ema_fast=snapshot.ema_fast,
        ema_slow=snapshot.ema_slow,
        prev_ema_fast=previous.ema_fast if previous else None,
        prev_ema_slow=previous.ema_slow if previous else None,
        rsi=snapshot.rsi,
        volume_ratio=volume_ratio,
        bar_bias=bias,
        bollinger_upper=snapshot.bollinger_upper,
        bollinger_lower=snapshot.bollinger_lower,
        atr=snapshot.atr,
    )


# ==================== Signals ====================

def build_signal(
    result: ConfluenceResult,
    inputs: ScoringInputs,
    regime: MarketRegime,
    sizer: Optional[PositionSizer] = None,
    candles: Sequence[Candle] = (),
    settings: Optional[Settings] = None,
) -> TradingSignal:
    """Turn a decision into a TradingSignal; BUY/SELL get sized price levels."""
    if result.action is Action.HOLD:
        return TradingSignal(
            action=Action.HOLD,
            confidence=result.confidence,
            reason=result.reason,
            regime=regime,
            timestamp=inputs.timestamp,
            components=result.components,
        )

    s = settings or default_settings
    sizer = sizer or PositionSizer(s)
    position = sizer.calculate(
        entry_price=inputs.price,
        action=result.action,
        regime=regime,
        confidence=result.confidence,
        candles=candles,
        atr=inputs.atr,
    )
    ok, why = validate_position(
        position,
        account_balance=s.account_balance,
        entry_price=inputs.price,
        max_position_pct=s.max_position_pct,
        min_rr=s.min_rr_ratio,
    )
    if not ok:
        logger.warning("[RISK] %s signal not executable: %s", result.action.value, why)

    return TradingSignal(
        action=result.action,
        confidence=result.confidence,
        reason=result.reason,
        regime=regime,
        timestamp=inputs.timestamp,
        entry_price=inputs.price,
        stop_loss=position.stop_loss,
        take_profit=position.take_profit,
        position=position,
        executable=ok,
        rejection_reason=why,
        components=result.components,
    )


def score_candles(
    candles: Sequence[Candle],
    regime: MarketRegime,
    settings: Optional[Settings] = None,
    sizer: Optional[PositionSizer] = None,
) -> TradingSignal:
    """Score raw candles (oldest first) under a regime."""
    s = settings or default_settings
    need = min_candles(s)
    if len(candles) < need:
        return TradingSignal(
            action=Action.HOLD,
            confidence=0.0,
            reason=f"Insufficient data ({len(candles)}/{need} candles)",
            regime=regime,
            timestamp=candles[-1].time if candles else 0,
        )

    inputs = inputs_from_candles(candles, s)
    result = decide(evaluate_components(inputs, regime, s), s.min_confluence_score)
    return build_signal(result, inputs, regime, sizer, candles, s)


def score_snapshot(
    snapshot: IndicatorSnapshot,
    previous: Optional[IndicatorSnapshot],
    regime: MarketRegime,
    volume_ratio: Optional[float] = None,
    bias: Bias = Bias.NEUTRAL,
    settings: Optional[Settings] = None,
    sizer: Optional[PositionSizer] = None,
    candles: Sequence[Candle] = (),
) -> TradingSignal:
    """Score an indicator snapshot against the one before it."""
    s = settings or default_settings
    inputs = inputs_from_snapshot(snapshot, previous, volume_ratio, bias)
    result = decide(evaluate_components(inputs, regime, s), s.min_confluence_score)
    return build_signal(result, inputs, regime, sizer, candles, s)
