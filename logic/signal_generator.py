"""
Signal Generator

Bus agent that turns indicator snapshots into trading signals. It keeps the
latest regime, a short candle history for volume and ATR, and the previous
snapshot for crossover detection. Signal history lives in memory only.
"""

from collections import deque
from typing import List, Optional

from core.config import Settings, settings as default_settings
from core.events import (
    AgentMessage,
    ComponentId,
    IndicatorsReady,
    InitialCandles,
    MessageBus,
    MessageType,
    NewClosedCandle,
    NewSignal,
    RegimeUpdated,
)
from core.logging_utils import get_logger
from core.models import Bias, Candle, IndicatorSnapshot, MarketRegime, RegimeAnalysis, TradingSignal
from execution.risk import PositionSizer
from logic import indicators as ind
from logic.scoring import bar_bias, score_snapshot

logger = get_logger(__name__)


class SignalGenerator:
    def __init__(
        self,
        bus: MessageBus,
        settings: Optional[Settings] = None,
        sizer: Optional[PositionSizer] = None,
    ):
        self.bus = bus
        self.settings = settings or default_settings
        self.sizer = sizer or PositionSizer(self.settings)

        self.regime: RegimeAnalysis = RegimeAnalysis(regime=MarketRegime.RANGING, confidence=50)
        self._candles: deque[Candle] = deque(maxlen=self.settings.signal_candle_history)
        self._previous: Optional[IndicatorSnapshot] = None
        self._signals: deque[TradingSignal] = deque(maxlen=self.settings.signal_history_max)

        self._unsubscribe = [
            bus.register(MessageType.REGIME_UPDATED, self._on_regime),
            bus.register(MessageType.INITIAL_CANDLES, self._on_candles),
            bus.register(MessageType.NEW_CLOSED_CANDLE, self._on_candles),
            bus.register(MessageType.INDICATORS_READY, self._on_indicators),
        ]

    @property
    def last_signal(self) -> Optional[TradingSignal]:
        return self._signals[-1] if self._signals else None

    def history(self) -> List[TradingSignal]:
        return list(self._signals)

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def _on_regime(self, message: AgentMessage) -> None:
        if isinstance(message.payload, RegimeUpdated):
            self.regime = message.payload.analysis

    def _on_candles(self, message: AgentMessage) -> None:
        payload = message.payload
        if isinstance(payload, InitialCandles):
            self._candles.clear()
            self._candles.extend(c for c in payload.candles if c.is_closed)
            # A full replace invalidates crossover state
            self._previous = None
        elif isinstance(payload, NewClosedCandle):
            candle = payload.candle
            if self._candles and candle.time <= self._candles[-1].time:
                return
            self._candles.append(candle)

    def _on_indicators(self, message: AgentMessage) -> None:
        if not isinstance(message.payload, IndicatorsReady):
            return
        snapshot = message.payload.snapshot
        signal = self.evaluate(snapshot)
        self._previous = snapshot
        self._signals.append(signal)

        if signal.is_actionable:
            logger.info(
                "[SIGNAL] %s @ %.2f conf=%.0f SL=%.2f TP=%.2f executable=%s (%s)",
                signal.action.value,
                signal.entry_price,
                signal.confidence,
                signal.stop_loss,
                signal.take_profit,
                signal.executable,
                signal.reason,
            )
        else:
            logger.debug("[SIGNAL] HOLD conf=%.0f (%s)", signal.confidence, signal.reason)

        self.bus.publish(ComponentId.SIGNALS, NewSignal(signal=signal))

    def evaluate(self, snapshot: IndicatorSnapshot) -> TradingSignal:
        """Score a snapshot against the previous one under the current regime."""
        candles = list(self._candles)
        ratio = None
        bias = bar_bias(candles[-1]) if candles else Bias.NEUTRAL
        lookback = self.settings.volume_lookback
        if len(candles) >= lookback and candles[-1].time == snapshot.timestamp:
            ratio = ind.volume_ratio([c.volume for c in candles], lookback, include_current=True)

        return score_snapshot(
            snapshot,
            self._previous,
            self.regime.regime,
            volume_ratio=ratio,
            bias=bias,
            settings=self.settings,
            sizer=self.sizer,
            candles=candles,
        )
