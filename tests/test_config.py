"""Tests for settings."""

from core.config import Settings


def test_defaults():
    s = Settings()
    assert s.symbol == "BTCUSDT"
    assert s.interval == "5m"
    assert s.min_confluence_score == 5
    assert s.min_rr_ratio == 2.0
    assert s.max_reconnect_attempts == 10


def test_indicator_gate_is_longest_period_plus_margin():
    assert Settings().min_indicator_candles == 26
    assert Settings(bollinger_period=40).min_indicator_candles == 45


def test_stream_name():
    s = Settings(symbol="ETHUSDT", interval="1m")
    assert s.stream_name == "ethusdt@kline_1m"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SYMBOL", "SOLUSDT")
    monkeypatch.setenv("ACCOUNT_BALANCE", "2500")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    s = Settings()
    assert s.symbol == "SOLUSDT"
    assert s.account_balance == 2500.0
    assert s.log_level == "DEBUG"


def test_model_copy_keeps_other_fields():
    s = Settings().model_copy(update={"account_balance": 500.0})
    assert s.account_balance == 500.0
    assert s.symbol == "BTCUSDT"
