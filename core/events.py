"""Message definitions and the in-process bus that carries them.

Every component talks to every other one only through `MessageBus`. The set
of message kinds is closed: one frozen payload class per `MessageType`, so
handlers can dispatch on the payload class instead of casting loose dicts.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, Optional, Union

from core.logging_utils import get_logger
from core.models import Candle, IndicatorSnapshot, RegimeAnalysis, TradingSignal

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class ComponentId(Enum):
    FEED = "MarketDataFeed"
    INDICATORS = "IndicatorEngine"
    REGIME = "RegimeClassifier"
    SIGNALS = "SignalGenerator"
    EXTERNAL = "External"


class MessageType(Enum):
    INITIAL_CANDLES = "INITIAL_CANDLES"
    NEW_CLOSED_CANDLE = "NEW_CLOSED_CANDLE"
    LIVE_CANDLE_UPDATE = "LIVE_CANDLE_UPDATE"
    CONNECTION_STATUS = "CONNECTION_STATUS"
    FEED_ERROR = "FEED_ERROR"
    REQUEST_INITIAL_DATA = "REQUEST_INITIAL_DATA"
    INDICATORS_WARMING_UP = "INDICATORS_WARMING_UP"
    INDICATORS_READY = "INDICATORS_READY"
    REGIME_UPDATED = "REGIME_UPDATED"
    NEW_SIGNAL = "NEW_SIGNAL"


class FeedState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"             # Retry budget spent; waits for refresh()


@dataclass(frozen=True)
class InitialCandles:
    """Full-state replace of the candle history, oldest first."""
    message_type: ClassVar[MessageType] = MessageType.INITIAL_CANDLES
    candles: tuple[Candle, ...]


@dataclass(frozen=True)
class NewClosedCandle:
    message_type: ClassVar[MessageType] = MessageType.NEW_CLOSED_CANDLE
    candle: Candle


@dataclass(frozen=True)
class LiveCandleUpdate:
    message_type: ClassVar[MessageType] = MessageType.LIVE_CANDLE_UPDATE
    candle: Candle


@dataclass(frozen=True)
class ConnectionStatus:
    message_type: ClassVar[MessageType] = MessageType.CONNECTION_STATUS
    connected: bool
    state: FeedState
    detail: str = ""
    attempt: int = 0


@dataclass(frozen=True)
class FeedErrorReport:
    message_type: ClassVar[MessageType] = MessageType.FEED_ERROR
    message: str
    error: str = ""
    terminal: bool = False


@dataclass(frozen=True)
class RequestInitialData:
    message_type: ClassVar[MessageType] = MessageType.REQUEST_INITIAL_DATA


@dataclass(frozen=True)
class IndicatorsWarmingUp:
    message_type: ClassVar[MessageType] = MessageType.INDICATORS_WARMING_UP
    have: int
    need: int


@dataclass(frozen=True)
class IndicatorsReady:
    message_type: ClassVar[MessageType] = MessageType.INDICATORS_READY
    snapshot: IndicatorSnapshot


@dataclass(frozen=True)
class RegimeUpdated:
    message_type: ClassVar[MessageType] = MessageType.REGIME_UPDATED
    analysis: RegimeAnalysis


@dataclass(frozen=True)
class NewSignal:
    message_type: ClassVar[MessageType] = MessageType.NEW_SIGNAL
    signal: TradingSignal


MessagePayload = Union[
    InitialCandles,
    NewClosedCandle,
    LiveCandleUpdate,
    ConnectionStatus,
    FeedErrorReport,
    RequestInitialData,
    IndicatorsWarmingUp,
    IndicatorsReady,
    RegimeUpdated,
    NewSignal,
]


@dataclass(frozen=True)
class AgentMessage:
    """Unit of communication on the bus; never mutated after publish."""
    sender: ComponentId
    payload: MessagePayload
    timestamp: int

    @property
    def type(self) -> MessageType:
        return self.payload.message_type


def make_message(sender: ComponentId, payload: MessagePayload, timestamp: Optional[int] = None) -> AgentMessage:
    return AgentMessage(
        sender=sender,
        payload=payload,
        timestamp=now_ms() if timestamp is None else timestamp,
    )


Handler = Callable[[AgentMessage], None]


class MessageBus:
    """
    Synchronous publish/subscribe router.

    Handlers for a type run in registration order. A failing handler is
    logged and skipped. Sends made from inside a handler are queued behind
    the message being dispatched, which keeps delivery FIFO per type.
    """

    def __init__(self, name: str = "bus"):
        self.name = name
        self._handlers: dict[MessageType, list[Handler]] = defaultdict(list)
        self._pending: deque[AgentMessage] = deque()
        self._dispatching = False
        self._closed = False
        self.messages_sent = 0
        self.handler_errors = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    def register(self, message_type: MessageType, handler: Handler) -> Callable[[], None]:
        """Subscribe `handler` to `message_type`; returns an unsubscribe function."""
        self._handlers[message_type].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[message_type].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def handler_count(self, message_type: MessageType) -> int:
        return len(self._handlers.get(message_type, ()))

    def send(self, message: AgentMessage) -> None:
        if self._closed:
            logger.debug("[BUS] %s closed, dropping %s from %s", self.name, message.type.value, message.sender.value)
            return

        self._pending.append(message)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                self._dispatch(self._pending.popleft())
        finally:
            self._dispatching = False

    def publish(self, sender: ComponentId, payload: MessagePayload) -> None:
        """Convenience wrapper: build the envelope and send it."""
        self.send(make_message(sender, payload))

    def _dispatch(self, message: AgentMessage) -> None:
        self.messages_sent += 1
        logger.debug("[BUS] [%s] sent [%s]", message.sender.value, message.type.value)
        for handler in list(self._handlers.get(message.type, ())):
            try:
                handler(message)
            except Exception as e:
                # Non-fatal; never break the data path
                self.handler_errors += 1
                logger.warning(
                    "[BUS] Handler error for %s: %s",
                    message.type.value,
                    e,
                    exc_info=True,
                )
                continue

    def close(self) -> None:
        """Stop accepting sends; messages already accepted still get delivered."""
        self._closed = True
