"""Tests for confluence scoring."""

import pytest

from core.models import Action, Bias, Candle, IndicatorSnapshot, MarketRegime, SignalComponent
from execution.risk import PositionSizer
from logic import scoring
from logic.scoring import (
    BOLLINGER_TOUCH,
    EMA_CROSSOVER,
    RSI_CONFIRMATION,
    VOLUME_SPIKE,
    decide,
    evaluate_bollinger,
    evaluate_ema_crossover,
    evaluate_rsi,
    evaluate_volume,
    score_candles,
    score_snapshot,
)


def _flat(closes, volume: float = 100.0) -> list[Candle]:
    return [
        Candle(time=i * 60_000, open=c, high=c, low=c, close=c, volume=volume)
        for i, c in enumerate(closes)
    ]


def _component(name: str, signal_components) -> SignalComponent:
    return next(c for c in signal_components if c.name == name)


def _comp(points: int, active: bool, bias: Bias, name: str = "X") -> SignalComponent:
    return SignalComponent(name=name, points=points, active=active, bias=bias)


def test_max_score_is_nine():
    assert scoring.MAX_SCORE == 9
    assert scoring.COMPONENT_POINTS[EMA_CROSSOVER] == 3


def test_crossover_with_overbought_rsi_in_ranging_market(test_settings):
    candles = _flat([100.0] * 21 + [80.0, 80.0, 120.0, 130.0])
    signal = score_candles(candles, MarketRegime.RANGING, test_settings)

    cross = _component(EMA_CROSSOVER, signal.components)
    rsi = _component(RSI_CONFIRMATION, signal.components)
    assert cross.active and cross.bias is Bias.BULLISH
    # Overbought RSI votes against the crossover instead of confirming it
    assert rsi.active and rsi.bias is Bias.BEARISH
    assert "overbought" in rsi.description

    inputs = scoring.inputs_from_candles(candles, test_settings)
    assert inputs.rsi > 70
    result = decide(scoring.evaluate_components(inputs, MarketRegime.RANGING, test_settings))
    assert result.bullish_votes == 1
    assert result.score == 7
    assert "EMA Crossover (bullish)" in result.reason
    assert "RSI Confirmation (bearish)" in result.reason


def test_oversold_rsi_is_bullish_when_ranging():
    component = evaluate_rsi(0.0, MarketRegime.RANGING)
    assert component.active and component.bias is Bias.BULLISH
    assert component.points == 2


def test_rsi_neutral_zone_inactive_when_ranging():
    assert not evaluate_rsi(50.0, MarketRegime.RANGING).active


def test_rsi_momentum_band_when_trending():
    assert evaluate_rsi(60.0, MarketRegime.STRONG_TREND_UP).bias is Bias.BULLISH
    assert evaluate_rsi(40.0, MarketRegime.WEAK_TREND_DOWN).bias is Bias.BEARISH
    assert not evaluate_rsi(85.0, MarketRegime.STRONG_TREND_UP).active
    assert not evaluate_rsi(15.0, MarketRegime.STRONG_TREND_DOWN).active


def test_ema_crossover_directions():
    assert evaluate_ema_crossover(9.0, 10.0, 11.0, 10.0).bias is Bias.BULLISH
    assert evaluate_ema_crossover(11.0, 10.0, 9.0, 10.0).bias is Bias.BEARISH
    assert not evaluate_ema_crossover(11.0, 10.0, 12.0, 10.0).active
    assert not evaluate_ema_crossover(None, 10.0, 12.0, 10.0).active


def test_volume_spike_follows_bar_direction():
    assert evaluate_volume(2.0, Bias.BEARISH).bias is Bias.BEARISH
    assert evaluate_volume(1.5, Bias.BULLISH).active
    assert not evaluate_volume(1.4, Bias.BULLISH).active
    doji = evaluate_volume(3.0, Bias.NEUTRAL)
    assert doji.active and doji.bias is Bias.NEUTRAL


def test_bollinger_reversal_when_ranging_continuation_when_trending():
    assert evaluate_bollinger(110.0, 110.0, 90.0, MarketRegime.RANGING).bias is Bias.BEARISH
    assert evaluate_bollinger(110.0, 110.0, 90.0, MarketRegime.STRONG_TREND_UP).bias is Bias.BULLISH
    assert evaluate_bollinger(90.2, 110.0, 90.0, MarketRegime.RANGING).bias is Bias.BULLISH
    assert evaluate_bollinger(90.2, 110.0, 90.0, MarketRegime.WEAK_TREND_DOWN).bias is Bias.BEARISH
    assert not evaluate_bollinger(100.0, 110.0, 90.0, MarketRegime.RANGING).active


def test_bollinger_zero_width_inactive():
    component = evaluate_bollinger(100.0, 100.0, 100.0, MarketRegime.RANGING)
    assert not component.active


def test_below_threshold_is_hold():
    result = decide([_comp(3, True, Bias.BULLISH)], min_score=5)
    assert result.action is Action.HOLD
    assert result.score == 3
    assert result.reason.startswith("Score 3/9 below 5")


def test_tie_is_hold():
    result = decide([_comp(3, True, Bias.BULLISH), _comp(2, True, Bias.BEARISH)])
    assert result.score == 5
    assert result.action is Action.HOLD
    assert "split" in result.reason


def test_majority_vote_sets_direction():
    comps = [_comp(3, True, Bias.BEARISH), _comp(2, True, Bias.BEARISH), _comp(2, True, Bias.BULLISH)]
    result = decide(comps)
    assert result.action is Action.SELL
    assert (result.bullish_votes, result.bearish_votes) == (1, 2)
    assert result.confidence == pytest.approx(700 / 9)


def test_adding_active_component_never_lowers_score():
    base = [_comp(3, True, Bias.BULLISH), _comp(2, False, Bias.NEUTRAL)]
    more = [_comp(3, True, Bias.BULLISH), _comp(2, True, Bias.BEARISH)]
    assert decide(more).score >= decide(base).score


def test_reason_lists_every_active_component():
    comps = [
        SignalComponent(EMA_CROSSOVER, 3, True, Bias.BULLISH),
        SignalComponent(RSI_CONFIRMATION, 2, False),
        SignalComponent(VOLUME_SPIKE, 2, True, Bias.BULLISH),
        SignalComponent(BOLLINGER_TOUCH, 2, True, Bias.BEARISH),
    ]
    result = decide(comps)
    for c in result.active:
        assert c.name in result.reason
    assert RSI_CONFIRMATION not in result.reason
    assert decide([SignalComponent(EMA_CROSSOVER, 3, False)]).reason.endswith("no active components")


def test_insufficient_candles(test_settings):
    signal = score_candles(_flat([100.0] * 10), MarketRegime.RANGING, test_settings)
    assert signal.action is Action.HOLD
    assert signal.reason == "Insufficient data (10/22 candles)"
    assert signal.entry_price is None


def test_hold_signal_carries_no_levels(test_settings):
    signal = score_candles(_flat([100.0] * 30), MarketRegime.RANGING, test_settings)
    assert signal.action is Action.HOLD
    assert signal.stop_loss is None and signal.take_profit is None and signal.position is None


def test_flat_ranging_stretch_reads_overbought(test_settings):
    signal = score_candles(_flat([100.0] * 30), MarketRegime.RANGING, test_settings)
    rsi = _component(RSI_CONFIRMATION, signal.components)
    assert rsi.active and rsi.bias is Bias.BEARISH
    assert "overbought" in rsi.description


def _snapshot(price, fast, slow, rsi, upper=120.0, lower=80.0, atr=2.0, ts=1):
    return IndicatorSnapshot(
        current_price=price,
        timestamp=ts,
        ema_fast=fast,
        ema_slow=slow,
        rsi=rsi,
        bollinger_upper=upper,
        bollinger_middle=(upper + lower) / 2,
        bollinger_lower=lower,
        atr=atr,
    )


def test_actionable_snapshot_signal_is_sized(test_settings):
    previous = _snapshot(100.0, 99.0, 100.0, 55.0)
    current = _snapshot(101.0, 101.0, 100.0, 60.0, ts=2)
    signal = score_snapshot(
        current,
        previous,
        MarketRegime.STRONG_TREND_UP,
        volume_ratio=2.0,
        bias=Bias.BULLISH,
        settings=test_settings,
        sizer=PositionSizer(test_settings),
    )
    # Crossover + RSI momentum + volume spike
    assert signal.action is Action.BUY
    assert signal.entry_price == 101.0
    assert signal.stop_loss == pytest.approx(101.0 - 2.0 * 2.5)
    assert signal.take_profit == pytest.approx(101.0 + 2.0 * 2.5 * 2)
    assert signal.position.risk_reward_ratio >= 2.0 - 1e-9
    assert signal.executable
    assert signal.timestamp == 2


def test_sell_signal_levels(test_settings):
    previous = _snapshot(100.0, 101.0, 100.0, 45.0)
    current = _snapshot(99.0, 99.0, 100.0, 40.0, ts=2)
    signal = score_snapshot(
        current, previous, MarketRegime.WEAK_TREND_DOWN,
        volume_ratio=1.0, settings=test_settings,
    )
    assert signal.action is Action.SELL
    assert signal.stop_loss > signal.entry_price > signal.take_profit


def test_oversized_position_is_flagged_not_raised(test_settings):
    tight = test_settings.model_copy(update={"max_position_pct": 0.01})
    previous = _snapshot(100.0, 99.0, 100.0, 55.0)
    current = _snapshot(101.0, 101.0, 100.0, 60.0, atr=0.01, ts=2)
    signal = score_snapshot(
        current, previous, MarketRegime.STRONG_TREND_UP,
        volume_ratio=2.0, bias=Bias.BULLISH, settings=tight,
    )
    assert signal.action is Action.BUY
    assert not signal.executable
    assert "exceeds" in signal.rejection_reason
