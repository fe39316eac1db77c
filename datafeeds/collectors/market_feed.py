"""
Market data feed.

Bootstraps a bounded candle buffer from a historical fetch, then applies
live kline updates. A single run task owns the connection lifecycle:
failures back off exponentially, reconnects reconcile history while the
socket is already streaming, and an exhausted retry budget leaves the feed
offline until `refresh()`.
"""

import asyncio
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Tuple

from core.config import Settings, settings as default_settings
from core.events import (
    AgentMessage,
    ComponentId,
    ConnectionStatus,
    FeedErrorReport,
    FeedState,
    InitialCandles,
    LiveCandleUpdate,
    MessageBus,
    MessageType,
    NewClosedCandle,
)
from core.helpers import validate_candle, validate_candles
from core.logging_utils import get_logger
from core.models import BufferChange, Candle, CandleBuffer
from datafeeds.errors import FeedConnectionError, HistoryFetchError, MalformedCandleError

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class HistorySource(Protocol):
    async def fetch(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        ...


class LiveSource(Protocol):
    def connect(self, symbol: str, interval: str) -> AsyncContextManager[AsyncIterator[Tuple[Candle, bool]]]:
        ...


class MarketDataFeed:
    """Reconnecting candle feed for one symbol/interval."""

    def __init__(
        self,
        bus: MessageBus,
        history_source: HistorySource,
        live_source: LiveSource,
        settings: Optional[Settings] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.bus = bus
        self.settings = settings or default_settings
        self.symbol = self.settings.symbol
        self.interval = self.settings.interval
        self._history = history_source
        self._live = live_source
        self._sleep = sleep

        self._buffer = CandleBuffer(max_size=self.settings.buffer_max)
        self._state = FeedState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None

        # Reconnection state
        self._attempts = 0
        self._scheduled_delays: List[float] = []
        self._total_reconnects = 0
        self.rejected_updates = 0

        self._unsubscribe = bus.register(MessageType.REQUEST_INITIAL_DATA, self._on_request_initial)

    # ==================== Read access ====================

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def buffer(self) -> tuple[Candle, ...]:
        return self._buffer.snapshot()

    @property
    def last_price(self) -> float:
        return self._buffer.last_price

    @property
    def scheduled_delays(self) -> List[float]:
        return list(self._scheduled_delays)

    @property
    def total_reconnects(self) -> int:
        return self._total_reconnects

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ==================== Lifecycle ====================

    def start(self) -> asyncio.Task:
        """Launch the run task; a no-op while one is already running."""
        if self.is_running:
            return self._task
        self._attempts = 0
        self._task = asyncio.create_task(self._run(), name=f"feed-{self.symbol}-{self.interval}")
        return self._task

    async def stop(self) -> None:
        """Cancel the run task, any pending backoff sleep and the live socket."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state is not FeedState.DISCONNECTED:
            self._set_state(FeedState.DISCONNECTED, "stopped")

    async def refresh(self) -> asyncio.Task:
        """Restart from scratch, including after the feed went offline."""
        await self.stop()
        return self.start()

    def close(self) -> None:
        self._unsubscribe()

    async def _run(self) -> None:
        first = True
        while True:
            try:
                if first:
                    self._set_state(FeedState.CONNECTING, "loading history")
                    await self._load_history()
                await self._stream(reconcile=not first)
                raise FeedConnectionError("live stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                first = False
                if not await self._schedule_retry(e):
                    return

    async def _schedule_retry(self, error: Exception) -> bool:
        """Back off before the next attempt; False once the budget is spent."""
        s = self.settings
        self._attempts += 1
        if self._attempts > s.max_reconnect_attempts:
            logger.error(
                "[FEED] Max reconnect attempts (%d) reached, going offline: %s",
                s.max_reconnect_attempts,
                error,
            )
            self.bus.publish(
                ComponentId.FEED,
                FeedErrorReport(
                    message=f"Gave up after {s.max_reconnect_attempts} reconnect attempts",
                    error=str(error),
                    terminal=True,
                ),
            )
            self._set_state(FeedState.OFFLINE, str(error), attempt=self._attempts)
            return False

        delay = min(s.reconnect_base_delay * 2 ** (self._attempts - 1), s.reconnect_max_delay)
        if isinstance(error, HistoryFetchError) and error.rate_limited and error.retry_after:
            # Exchange-imposed ban outlasts the local ceiling
            delay = max(delay, error.retry_after)
        self._scheduled_delays.append(delay)
        self._total_reconnects += 1
        logger.warning(
            "[FEED] %s, reconnecting in %.1fs... (attempt %d)",
            error,
            delay,
            self._attempts,
        )
        self._set_state(FeedState.RECONNECTING, f"retrying in {delay:.1f}s: {error}", attempt=self._attempts)
        await self._sleep(delay)
        return True

    async def _stream(self, reconcile: bool) -> None:
        async with self._live.connect(self.symbol, self.interval) as updates:
            self._set_state(FeedState.CONNECTED, "live")
            tasks = [asyncio.create_task(self._consume(updates))]
            if reconcile:
                tasks.append(asyncio.create_task(self._reconcile()))
            else:
                self._mark_healthy()

            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            finally:
                for t in tasks:
                    if not t.done():
                        t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    raise t.exception()

    async def _consume(self, updates: AsyncIterator[Tuple[Candle, bool]]) -> None:
        async for candle, is_closed in updates:
            self.handle_update(candle, is_closed)

    def _mark_healthy(self) -> None:
        if self._attempts:
            logger.info("[FEED] Reconnected after %d attempts", self._attempts)
        self._attempts = 0

    # ==================== History ====================

    async def _fetch_history(self) -> List[Candle]:
        candles = await self._history.fetch(self.symbol, self.interval, self.settings.history_limit)
        return validate_candles(candles)

    async def _load_history(self) -> None:
        candles = await self._fetch_history()
        self._buffer.replace_all(candles)
        logger.info("[FEED] Loaded %d historical candles for %s", len(self._buffer), self.symbol)
        self._publish_initial()

    async def _reconcile(self) -> None:
        fetched = await self._fetch_history()
        self.apply_reconciliation(fetched)
        self._mark_healthy()

    def apply_reconciliation(self, fetched: List[Candle]) -> None:
        """
        Merge a reconciliation fetch into the buffer and republish it.

        History wins where times overlap and buffered candles newer than the
        payload are kept. A payload that ends before the newest buffered
        closed candle arrived late: it only fills gaps and overwrites nothing.
        """
        if fetched:
            newest_closed = self._buffer.newest_closed_time
            if newest_closed is not None and fetched[-1].time < newest_closed:
                known = {c.time for c in self._buffer}
                gaps = [c for c in fetched if c.time not in known]
                self._buffer.replace_all(list(self._buffer) + gaps)
                logger.warning(
                    "[FEED] Stale reconciliation (newest %d < buffered %d), filled %d gaps",
                    fetched[-1].time,
                    newest_closed,
                    len(gaps),
                )
            else:
                first, newest = fetched[0].time, fetched[-1].time
                older = [c for c in self._buffer if c.time < first]
                newer = [c for c in self._buffer if c.time > newest]
                self._buffer.replace_all(older + list(fetched) + newer)
                logger.info(
                    "[FEED] Reconciled %d fetched candles, kept %d newer live candles",
                    len(fetched),
                    len(newer),
                )
        self._publish_initial()

    def _publish_initial(self) -> None:
        self.bus.publish(ComponentId.FEED, InitialCandles(candles=self._buffer.snapshot()))

    # ==================== Live updates ====================

    def handle_update(self, candle: Candle, is_closed: bool) -> bool:
        """Apply one live update; returns False if it was rejected."""
        try:
            validate_candle(candle)
        except MalformedCandleError as e:
            self.rejected_updates += 1
            logger.warning("[FEED] Rejected malformed candle: %s", e)
            return False

        if candle.is_closed != is_closed:
            candle = candle.with_closed(is_closed)

        change = self._buffer.upsert(candle)
        if change is BufferChange.REJECTED:
            self.rejected_updates += 1
            last = self._buffer.last
            logger.warning(
                "[FEED] Rejected candle at %d (buffer tail %s)",
                candle.time,
                last.time if last else "empty",
            )
            return False

        if is_closed:
            self.bus.publish(ComponentId.FEED, NewClosedCandle(candle=candle))
        else:
            self.bus.publish(ComponentId.FEED, LiveCandleUpdate(candle=candle))
        return True

    # ==================== Bus ====================

    def _on_request_initial(self, message: AgentMessage) -> None:
        if len(self._buffer) == 0:
            logger.debug("[FEED] Initial data requested but buffer is empty")
            return
        self._publish_initial()

    def _set_state(self, state: FeedState, detail: str = "", attempt: int = 0) -> None:
        self._state = state
        logger.info("[FEED] %s%s", state.value, f" ({detail})" if detail else "")
        self.bus.publish(
            ComponentId.FEED,
            ConnectionStatus(
                connected=state is FeedState.CONNECTED,
                state=state,
                detail=detail,
                attempt=attempt,
            ),
        )
