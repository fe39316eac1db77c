"""Pipeline configuration."""

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Market
    symbol: str = Field(default="BTCUSDT", alias="SYMBOL")
    interval: str = Field(default="5m", alias="INTERVAL")
    binance_base_url: str = Field(default="https://api.binance.com/api/v3", alias="BINANCE_BASE_URL")
    binance_ws_url: str = Field(default="wss://stream.binance.com:9443/ws", alias="BINANCE_WS_URL")

    # Feed
    history_limit: int = 100              # Candles fetched on bootstrap/reconcile
    buffer_max: int = 200                 # Feed buffer cap
    fetch_timeout_seconds: float = Field(default=10.0, alias="FETCH_TIMEOUT")
    ws_open_timeout_seconds: float = 10.0
    reconnect_base_delay: float = 1.0     # Doubles per attempt
    reconnect_max_delay: float = 30.0
    max_reconnect_attempts: int = 10      # Scheduled retries before going offline

    # Indicators
    ema_fast_period: int = 9
    ema_slow_period: int = 21
    rsi_period: int = 14
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    atr_period: int = 14
    indicator_margin: int = 5             # Extra bars on top of the longest period
    indicator_history_max: int = 200

    # Regime
    adx_period: int = 14
    regime_ema_period: int = 21
    volume_lookback: int = 20
    adx_weak_trend: float = 15.0
    adx_strong_trend: float = 25.0

    # Scoring
    min_confluence_score: int = 5
    volume_spike_ratio: float = 1.5
    band_touch_pct: float = 0.005         # Within 0.5% of a band
    signal_candle_history: int = 50
    signal_history_max: int = 100

    # Risk
    account_balance: float = Field(default=10_000.0, alias="ACCOUNT_BALANCE")
    base_risk_pct: float = 0.01
    atr_stop_mult: float = 2.5
    min_rr_ratio: float = 2.0
    fallback_stop_pct: float = 0.02
    fallback_risk_pct: float = 0.005
    max_position_pct: float = 1.0         # Position value vs account (1.0 = no leverage)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def min_indicator_candles(self) -> int:
        return max(
            self.ema_slow_period,
            self.rsi_period,
            self.bollinger_period,
            self.atr_period,
        ) + self.indicator_margin

    @property
    def stream_name(self) -> str:
        return f"{self.symbol.lower()}@kline_{self.interval}"


settings = Settings()
