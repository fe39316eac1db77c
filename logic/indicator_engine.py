"""
Indicator Engine

Bus agent that keeps its own window of closed candles and republishes a
consolidated IndicatorSnapshot once enough history exists.

Only closed candles count. In-progress updates are never subscribed to, so a
live tick cannot leak into EMA/RSI/ATR state.
"""

from collections import deque
from typing import Optional, Sequence

from core.config import Settings, settings as default_settings
from core.events import (
    AgentMessage,
    ComponentId,
    IndicatorsReady,
    IndicatorsWarmingUp,
    InitialCandles,
    MessageBus,
    MessageType,
    NewClosedCandle,
)
from core.logging_utils import get_logger
from core.models import Candle, IndicatorSnapshot
from logic import indicators as ind

logger = get_logger(__name__)


def compute_snapshot(
    candles: Sequence[Candle],
    ema_fast: int = 9,
    ema_slow: int = 21,
    rsi_period: int = 14,
    bollinger_period: int = 20,
    bollinger_std: float = 2.0,
    atr_period: int = 14,
) -> Optional[IndicatorSnapshot]:
    """
    Compute every indicator from the same window.

    Returns None unless all of them are available; a snapshot is never
    partially filled.
    """
    if not candles:
        return None

    closes = [c.close for c in candles]
    fast = ind.ema(closes, ema_fast)
    slow = ind.ema(closes, ema_slow)
    rsi = ind.rsi(closes, rsi_period)
    bands = ind.bollinger_bands(closes, bollinger_period, bollinger_std)
    atr = ind.atr(candles, atr_period)

    if fast is None or slow is None or rsi is None or bands is None or atr is None:
        return None

    upper, middle, lower = bands
    last = candles[-1]
    return IndicatorSnapshot(
        current_price=last.close,
        timestamp=last.time,
        ema_fast=fast,
        ema_slow=slow,
        rsi=rsi,
        bollinger_upper=upper,
        bollinger_middle=middle,
        bollinger_lower=lower,
        atr=atr,
    )


class IndicatorEngine:
    """Owns a bounded closed-candle window and publishes snapshots on the bus."""

    def __init__(self, bus: MessageBus, settings: Optional[Settings] = None):
        self.bus = bus
        self.settings = settings or default_settings
        self._window: deque[Candle] = deque(maxlen=self.settings.indicator_history_max)
        self.latest: Optional[IndicatorSnapshot] = None
        self.snapshots_published = 0
        self._unsubscribe = [
            bus.register(MessageType.INITIAL_CANDLES, self._on_message),
            bus.register(MessageType.NEW_CLOSED_CANDLE, self._on_message),
        ]

    @property
    def min_candles(self) -> int:
        return self.settings.min_indicator_candles

    @property
    def window_size(self) -> int:
        return len(self._window)

    @property
    def is_ready(self) -> bool:
        return len(self._window) >= self.min_candles

    def window(self) -> tuple[Candle, ...]:
        return tuple(self._window)

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def _on_message(self, message: AgentMessage) -> None:
        payload = message.payload
        if isinstance(payload, InitialCandles):
            self.load(payload.candles)
        elif isinstance(payload, NewClosedCandle):
            self.add_closed(payload.candle)

    def load(self, candles: Sequence[Candle]) -> None:
        """Full-state replace from an initial batch; in-progress entries are skipped."""
        by_time = {c.time: c for c in candles if c.is_closed}
        self._window.clear()
        self._window.extend(by_time[t] for t in sorted(by_time))
        self.latest = None
        logger.info("[INDICATORS] Loaded %d closed candles", len(self._window))
        self._recompute()

    def add_closed(self, candle: Candle) -> None:
        if not candle.is_closed:
            return
        if self._window and candle.time <= self._window[-1].time:
            logger.debug("[INDICATORS] Ignoring stale closed candle at %d", candle.time)
            return
        self._window.append(candle)
        self._recompute()

    def _recompute(self) -> None:
        need = self.min_candles
        have = len(self._window)
        if have < need:
            self.bus.publish(ComponentId.INDICATORS, IndicatorsWarmingUp(have=have, need=need))
            return

        s = self.settings
        snapshot = compute_snapshot(
            tuple(self._window),
            ema_fast=s.ema_fast_period,
            ema_slow=s.ema_slow_period,
            rsi_period=s.rsi_period,
            bollinger_period=s.bollinger_period,
            bollinger_std=s.bollinger_std,
            atr_period=s.atr_period,
        )
        if snapshot is None:
            logger.warning("[INDICATORS] Gate open with %d candles but indicators incomplete", have)
            return

        self.latest = snapshot
        self.snapshots_published += 1
        self.bus.publish(ComponentId.INDICATORS, IndicatorsReady(snapshot=snapshot))
