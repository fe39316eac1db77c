"""Market regime classification.

Stateful trend/range detector driven by closed candles. Keeps its own ring
buffers of high/low/close/volume, derives ADX/+DI/-DI plus RSI, EMA slope and
volume confirmation, and classifies one of five regimes. The ADX-only
strong/weak/ranging detector is the `RegimeConfig.three_state()` preset of
the same state machine.
"""

from collections import deque
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from core.config import Settings, settings as default_settings
from core.events import (
    AgentMessage,
    ComponentId,
    InitialCandles,
    MessageBus,
    MessageType,
    NewClosedCandle,
    RegimeUpdated,
)
from core.logging_utils import get_logger
from core.models import Candle, MarketRegime, RegimeAnalysis, RegimeTransition
from logic import indicators as ind

logger = get_logger(__name__)

# Display confidence is anchored on this ADX level
CONFIDENCE_ADX_BASE = 15.0


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class RegimeConfig:
    """Periods, thresholds and weights for the regime state machine."""
    adx_period: int = 14
    rsi_period: int = 14
    ema_period: int = 21
    volume_lookback: int = 20

    # ADX normalization range
    adx_weak_trend: float = 15.0
    adx_strong_trend: float = 25.0

    # Trend strength blend
    adx_weight: float = 0.5
    volume_weight: float = 0.3
    slope_weight: float = 0.2
    volume_floor: float = 0.8           # Volume ratio mapped to 0
    volume_span: float = 0.5            # floor + span mapped to 1
    slope_full_pct: float = 0.5         # |EMA slope| % mapped to 1

    di_ratio: float = 1.2               # Dominant DI must beat the other by this factor
    strong_threshold: float = 0.7
    weak_threshold: float = 0.4

    require_confirmation: bool = True
    direction_from_larger_di: bool = False
    uptrend_rsi: Tuple[float, float] = (45.0, 70.0)
    downtrend_rsi: Tuple[float, float] = (30.0, 55.0)

    max_history: int = 100

    @property
    def buffer_size(self) -> int:
        return max(self.adx_period * 2, self.volume_lookback, self.ema_period * 2)

    @classmethod
    def from_settings(cls, s: Settings) -> "RegimeConfig":
        return cls(
            adx_period=s.adx_period,
            rsi_period=s.rsi_period,
            ema_period=s.regime_ema_period,
            volume_lookback=s.volume_lookback,
            adx_weak_trend=s.adx_weak_trend,
            adx_strong_trend=s.adx_strong_trend,
        )

    @classmethod
    def three_state(cls, adx_period: int = 14) -> "RegimeConfig":
        """
        ADX-only detector: ADX > 25 strong, ADX > 20 weak, else ranging.

        Strength is ADX normalized over 20..30, so the 0.5 strong threshold
        sits at ADX 25 and the 0.0 weak threshold at ADX 20. Direction comes
        from whichever DI is larger and no confirmation is required.
        """
        return cls(
            adx_period=adx_period,
            adx_weak_trend=20.0,
            adx_strong_trend=30.0,
            adx_weight=1.0,
            volume_weight=0.0,
            slope_weight=0.0,
            di_ratio=1.0,
            strong_threshold=0.5,
            weak_threshold=0.0,
            require_confirmation=False,
            direction_from_larger_di=True,
        )


class RegimeClassifier:
    """Five-state regime machine fed one closed candle at a time."""

    def __init__(self, config: Optional[RegimeConfig] = None):
        self.config = config or RegimeConfig()
        size = self.config.buffer_size
        self._highs: deque[float] = deque(maxlen=size)
        self._lows: deque[float] = deque(maxlen=size)
        self._closes: deque[float] = deque(maxlen=size)
        self._volumes: deque[float] = deque(maxlen=size)

        period = self.config.adx_period
        self._trs: deque[float] = deque(maxlen=period)
        self._plus_dms: deque[float] = deque(maxlen=period)
        self._minus_dms: deque[float] = deque(maxlen=period)

        self._last_time: Optional[int] = None
        self.adx: Optional[float] = None
        self.plus_di: Optional[float] = None
        self.minus_di: Optional[float] = None
        self.atr: Optional[float] = None

        self._regime = MarketRegime.RANGING
        self._regime_started_at: Optional[int] = None
        self._history: deque[RegimeTransition] = deque(maxlen=self.config.max_history)
        self.transitions = 0
        self._analysis = RegimeAnalysis(regime=MarketRegime.RANGING, confidence=50)

    # ==================== Read access ====================

    @property
    def regime(self) -> MarketRegime:
        return self._regime

    @property
    def analysis(self) -> RegimeAnalysis:
        return self._analysis

    @property
    def is_ready(self) -> bool:
        return self._analysis.is_ready

    @property
    def regime_started_at(self) -> Optional[int]:
        return self._regime_started_at

    def history(self) -> list[RegimeTransition]:
        return list(self._history)

    def regime_duration_ms(self, now: int) -> int:
        """Time spent in the current regime, measured from the last transition."""
        if self._regime_started_at is None:
            return 0
        return max(0, now - self._regime_started_at)

    # ==================== Updates ====================

    def reset(self) -> None:
        """Drop indicator buffers; the regime and its transition history are kept."""
        for buf in (
            self._highs, self._lows, self._closes, self._volumes,
            self._trs, self._plus_dms, self._minus_dms,
        ):
            buf.clear()
        self._last_time = None
        self.adx = None
        self.plus_di = None
        self.minus_di = None
        self.atr = None
        self._analysis = replace(self._analysis, is_ready=False)

    def update(self, candle: Candle) -> RegimeAnalysis:
        if self._last_time is not None and candle.time <= self._last_time:
            logger.debug("[REGIME] Ignoring out-of-order candle at %d", candle.time)
            return self._analysis

        if self._closes:
            self._update_directional(candle)

        self._highs.append(candle.high)
        self._lows.append(candle.low)
        self._closes.append(candle.close)
        self._volumes.append(candle.volume)
        self._last_time = candle.time

        vr = ind.volume_ratio(list(self._volumes), self.config.volume_lookback)
        if len(self._closes) < self.config.buffer_size or self.adx is None:
            self._analysis = self._build_analysis(candle, vr, rsi=None, slope=0.0, ready=False)
            return self._analysis

        closes = list(self._closes)
        rsi = ind.rsi(closes, self.config.rsi_period)
        ema_values = ind.ema_series(closes, self.config.ema_period)
        ema_now = ema_values[-1]
        slope = self._ema_slope(ema_values)

        regime = self.classify(
            adx=self.adx,
            plus_di=self.plus_di or 0.0,
            minus_di=self.minus_di or 0.0,
            rsi=rsi if rsi is not None else 50.0,
            volume_ratio=vr,
            ema_slope=slope,
            price=candle.close,
            ema=ema_now,
        )
        self._record(regime, candle.time)
        self._analysis = self._build_analysis(candle, vr, rsi=rsi, slope=slope, ready=True)
        return self._analysis

    def _update_directional(self, candle: Candle) -> None:
        prev_high = self._highs[-1]
        prev_low = self._lows[-1]
        prev_close = self._closes[-1]

        tr = ind.true_range(candle.high, candle.low, prev_close)
        plus_dm, minus_dm = ind.directional_movement(candle.high, candle.low, prev_high, prev_low)
        self._trs.append(tr)
        self._plus_dms.append(plus_dm)
        self._minus_dms.append(minus_dm)

        period = self.config.adx_period
        if len(self._trs) < period:
            return

        avg_tr = sum(self._trs) / period
        avg_plus = sum(self._plus_dms) / period
        avg_minus = sum(self._minus_dms) / period
        self.atr = avg_tr

        if avg_tr > 0:
            self.plus_di = 100 * avg_plus / avg_tr
            self.minus_di = 100 * avg_minus / avg_tr
        else:
            self.plus_di = 0.0
            self.minus_di = 0.0

        di_sum = self.plus_di + self.minus_di
        dx = 100 * abs(self.plus_di - self.minus_di) / di_sum if di_sum > 0 else 0.0

        if self.adx is None:
            self.adx = dx
        else:
            self.adx = (self.adx * (period - 1) + dx) / period

    @staticmethod
    def _ema_slope(ema_values: list) -> float:
        if len(ema_values) < 2:
            return 0.0
        prev, now = ema_values[-2], ema_values[-1]
        if prev is None or now is None or prev == 0:
            return 0.0
        return (now - prev) / prev * 100

    # ==================== Classification ====================

    def trend_strength(self, adx: float, volume_ratio: float, ema_slope: float) -> float:
        cfg = self.config
        span = cfg.adx_strong_trend - cfg.adx_weak_trend
        # Only the blend is clamped; the ADX term may exceed 1 and terms may go negative
        adx_strength = (adx - cfg.adx_weak_trend) / span if span > 0 else 0.0
        vol_strength = min(1.0, (volume_ratio - cfg.volume_floor) / cfg.volume_span) if cfg.volume_span > 0 else 0.0
        slope_strength = min(1.0, abs(ema_slope) / cfg.slope_full_pct) if cfg.slope_full_pct > 0 else 0.0
        return _clamp(
            adx_strength * cfg.adx_weight
            + vol_strength * cfg.volume_weight
            + slope_strength * cfg.slope_weight
        )

    def classify(
        self,
        adx: float,
        plus_di: float,
        minus_di: float,
        rsi: float,
        volume_ratio: float,
        ema_slope: float,
        price: float,
        ema: Optional[float],
    ) -> MarketRegime:
        """Map one set of readings to a regime; no state is touched."""
        cfg = self.config
        strength = self.trend_strength(adx, volume_ratio, ema_slope)

        if plus_di > minus_di * cfg.di_ratio:
            direction = 1
        elif minus_di > plus_di * cfg.di_ratio:
            direction = -1
        elif cfg.direction_from_larger_di and plus_di != minus_di:
            direction = 1 if plus_di > minus_di else -1
        else:
            return MarketRegime.RANGING

        if cfg.require_confirmation:
            lo, hi = cfg.uptrend_rsi if direction > 0 else cfg.downtrend_rsi
            rsi_ok = lo < rsi < hi
            if ema is None:
                ema_ok = False
            else:
                ema_ok = price > ema if direction > 0 else price < ema
        else:
            rsi_ok = ema_ok = True

        if strength > cfg.strong_threshold and rsi_ok and ema_ok:
            return MarketRegime.STRONG_TREND_UP if direction > 0 else MarketRegime.STRONG_TREND_DOWN
        if strength > cfg.weak_threshold and (rsi_ok or ema_ok):
            return MarketRegime.WEAK_TREND_UP if direction > 0 else MarketRegime.WEAK_TREND_DOWN
        return MarketRegime.RANGING

    def confidence(self, volume_ratio: float) -> int:
        conf = 0.5
        if self.adx is not None:
            conf += min(0.3, (self.adx - CONFIDENCE_ADX_BASE) / 50)
        if volume_ratio > 1.5:
            conf += 0.1
        elif volume_ratio < 0.5:
            conf -= 0.1
        return round(_clamp(conf, 0.1, 0.95) * 100)

    def _record(self, regime: MarketRegime, timestamp: int) -> None:
        if self._history and self._history[-1].regime == regime:
            return
        previous = self._regime
        self._regime = regime
        self._regime_started_at = timestamp
        self._history.append(RegimeTransition(timestamp=timestamp, regime=regime))
        self.transitions += 1
        logger.info("[REGIME] %s -> %s at %d", previous.value, regime.value, timestamp)

    def _build_analysis(
        self,
        candle: Candle,
        vr: float,
        rsi: Optional[float],
        slope: float,
        ready: bool,
    ) -> RegimeAnalysis:
        return RegimeAnalysis(
            regime=self._regime,
            confidence=self.confidence(vr),
            adx=self.adx or 0.0,
            plus_di=self.plus_di or 0.0,
            minus_di=self.minus_di or 0.0,
            rsi=rsi if rsi is not None else 50.0,
            volume_ratio=vr,
            ema_slope=slope,
            atr=self.atr or 0.0,
            timestamp=candle.time,
            regime_started_at=self._regime_started_at,
            is_ready=ready,
        )


class RegimeAgent:
    """Bus adapter: feeds closed candles to a classifier, publishes transitions."""

    def __init__(
        self,
        bus: MessageBus,
        settings: Optional[Settings] = None,
        config: Optional[RegimeConfig] = None,
    ):
        self.bus = bus
        s = settings or default_settings
        self.classifier = RegimeClassifier(config or RegimeConfig.from_settings(s))
        self._unsubscribe = [
            bus.register(MessageType.INITIAL_CANDLES, self._on_message),
            bus.register(MessageType.NEW_CLOSED_CANDLE, self._on_message),
        ]

    @property
    def analysis(self) -> RegimeAnalysis:
        return self.classifier.analysis

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def _on_message(self, message: AgentMessage) -> None:
        payload = message.payload
        before = self.classifier.transitions
        if isinstance(payload, InitialCandles):
            self.classifier.reset()
            for candle in payload.candles:
                if candle.is_closed:
                    self.classifier.update(candle)
        elif isinstance(payload, NewClosedCandle):
            self.classifier.update(payload.candle)
        else:
            return

        if self.classifier.transitions != before:
            analysis = self.classifier.analysis
            logger.info(
                "[REGIME] Updated: %s (confidence %d, adx=%.1f)",
                analysis.regime.value,
                analysis.confidence,
                analysis.adx,
            )
            self.bus.publish(ComponentId.REGIME, RegimeUpdated(analysis=analysis))
