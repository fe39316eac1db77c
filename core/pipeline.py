"""Composition root: one bus and one set of components per symbol."""

from typing import Optional

from core.config import Settings, settings as default_settings
from core.events import ComponentId, MessageBus, RequestInitialData
from core.logging_utils import get_logger
from core.models import IndicatorSnapshot, RegimeAnalysis, TradingSignal
from datafeeds.collectors.market_feed import HistorySource, LiveSource, MarketDataFeed, SleepFn
from execution.risk import PositionSizer
from logic.indicator_engine import IndicatorEngine
from logic.regime import RegimeAgent, RegimeConfig
from logic.signal_generator import SignalGenerator

logger = get_logger(__name__)


class SignalPipeline:
    """
    Wires feed, regime, indicators and signals onto a private bus.

    The regime agent subscribes before the indicator engine, so a candle's
    regime transition is dispatched ahead of the snapshot that triggers
    scoring. Nothing is shared between pipelines.
    """

    def __init__(
        self,
        history_source: HistorySource,
        live_source: LiveSource,
        settings: Optional[Settings] = None,
        regime_config: Optional[RegimeConfig] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.settings = settings or default_settings
        self.bus = MessageBus(name=f"{self.settings.symbol}-{self.settings.interval}")

        feed_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.feed = MarketDataFeed(self.bus, history_source, live_source, self.settings, **feed_kwargs)
        self.regime = RegimeAgent(self.bus, self.settings, regime_config)
        self.indicators = IndicatorEngine(self.bus, self.settings)
        self.sizer = PositionSizer(self.settings)
        self.signals = SignalGenerator(self.bus, self.settings, self.sizer)

    @classmethod
    def for_binance(cls, settings: Optional[Settings] = None) -> "SignalPipeline":
        from datafeeds.binance_fetcher import BinanceHistory
        from datafeeds.collectors.kline_stream import BinanceKlineStream

        s = settings or default_settings
        return cls(BinanceHistory(s), BinanceKlineStream(s), s)

    # ==================== Lifecycle ====================

    def start(self):
        logger.info("[BUS] Starting pipeline %s", self.bus.name)
        return self.feed.start()

    async def stop(self) -> None:
        """Cancel the feed, then close the bus; in-flight dispatch completes."""
        await self.feed.stop()
        self.bus.close()
        for component in (self.signals, self.indicators, self.regime, self.feed):
            component.close()
        logger.info(
            "[BUS] Pipeline %s stopped (%d messages, %d handler errors)",
            self.bus.name,
            self.bus.messages_sent,
            self.bus.handler_errors,
        )

    async def refresh(self):
        """Restart the feed, e.g. after it went offline."""
        return await self.feed.refresh()

    def request_initial_data(self) -> None:
        self.bus.publish(ComponentId.EXTERNAL, RequestInitialData())

    # ==================== Read access ====================

    @property
    def latest_snapshot(self) -> Optional[IndicatorSnapshot]:
        return self.indicators.latest

    @property
    def regime_analysis(self) -> RegimeAnalysis:
        return self.regime.analysis

    @property
    def last_signal(self) -> Optional[TradingSignal]:
        return self.signals.last_signal
