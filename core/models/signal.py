"""Trading signal and sizing definitions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from core.models.regime import MarketRegime


class Action(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Bias(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class SignalComponent:
    """One weighted confluence input."""
    name: str
    points: int
    active: bool
    bias: Bias = Bias.NEUTRAL
    description: str = ""


@dataclass(frozen=True)
class PositionSizeResult:
    position_size: float
    risk_amount: float
    stop_loss: float
    take_profit: float
    risk_reward_ratio: float
    max_account_risk_percent: float
    used_fallback: bool = False


@dataclass(frozen=True)
class TradingSignal:
    """Trading decision; price levels are present only for BUY/SELL."""
    action: Action
    confidence: float
    reason: str
    regime: MarketRegime
    timestamp: int
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    position: Optional[PositionSizeResult] = None
    executable: bool = False
    rejection_reason: str = ""
    components: tuple[SignalComponent, ...] = field(default_factory=tuple)

    @property
    def is_actionable(self) -> bool:
        return self.action is not Action.HOLD
