"""Tests for the Binance history fetcher and kline stream decoding."""

import json
import time

import pytest
import requests

from core.models import Candle
from datafeeds.binance_fetcher import BinanceHistory, parse_kline_row
from datafeeds.collectors.kline_stream import BinanceKlineStream, candle_from_kline
from datafeeds.errors import HistoryFetchError, MalformedCandleError

NOW_MS = 1_700_000_000_000
BAR_MS = 300_000


def _row(open_time: int, close: str = "101.0", close_time=None) -> list:
    return [
        open_time,
        "100.0",
        "102.0",
        "99.0",
        close,
        "12.5",
        close_time if close_time is not None else open_time + BAR_MS - 1,
        "1262.5",
        42,
        "6.0",
        "606.0",
        "0",
    ]


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None, delay=0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


def _history(test_settings, session):
    return BinanceHistory(test_settings, session=session, clock=lambda: NOW_MS / 1000)


@pytest.mark.asyncio
async def test_fetch_returns_closed_candles_oldest_first(test_settings):
    start = NOW_MS - 3 * BAR_MS
    rows = [_row(start + BAR_MS), _row(NOW_MS), _row(start), _row(start + 2 * BAR_MS)]
    session = FakeSession(FakeResponse(payload=rows))
    candles = await _history(test_settings, session).fetch("btcusdt", "5m", 5000)

    assert [c.time for c in candles] == [start, start + BAR_MS, start + 2 * BAR_MS]
    assert all(c.is_closed for c in candles)
    url, params, _ = session.calls[0]
    assert url.endswith("/klines")
    assert params == {"symbol": "BTCUSDT", "interval": "5m", "limit": 1000}


@pytest.mark.asyncio
async def test_forming_kline_is_dropped(test_settings):
    rows = [_row(NOW_MS - 2 * BAR_MS), _row(NOW_MS - BAR_MS // 2)]
    candles = await _history(test_settings, FakeSession(FakeResponse(payload=rows))).fetch("BTCUSDT", "5m", 2)
    assert len(candles) == 1
    assert candles[0].time == NOW_MS - 2 * BAR_MS


@pytest.mark.asyncio
async def test_forming_kline_dropped_when_local_clock_runs_ahead(test_settings):
    # Exchange is one minute into the newest bar; the local clock is 250s ahead of it
    forming_open = NOW_MS - 60_000
    rows = [_row(forming_open - BAR_MS), _row(forming_open)]
    history = BinanceHistory(
        test_settings,
        session=FakeSession(FakeResponse(payload=rows)),
        clock=lambda: (NOW_MS + 250_000) / 1000,
    )
    candles = await history.fetch("BTCUSDT", "5m", 2)
    assert [c.time for c in candles] == [forming_open - BAR_MS]


@pytest.mark.asyncio
async def test_empty_result_is_not_an_error(test_settings):
    candles = await _history(test_settings, FakeSession(FakeResponse(payload=[]))).fetch("BTCUSDT", "5m", 10)
    assert candles == []


@pytest.mark.asyncio
async def test_malformed_rows_skipped(test_settings):
    start = NOW_MS - 4 * BAR_MS
    rows = [_row(start), ["garbage"], _row(start + BAR_MS, close="not-a-number"), _row(start + 2 * BAR_MS)]
    candles = await _history(test_settings, FakeSession(FakeResponse(payload=rows))).fetch("BTCUSDT", "5m", 10)
    assert [c.time for c in candles] == [start, start + 2 * BAR_MS]


@pytest.mark.asyncio
async def test_all_rows_malformed_is_an_error(test_settings):
    session = FakeSession(FakeResponse(payload=[["x"], [1, 2]]))
    with pytest.raises(HistoryFetchError):
        await _history(test_settings, session).fetch("BTCUSDT", "5m", 10)


@pytest.mark.asyncio
async def test_rate_limit_is_flagged(test_settings):
    session = FakeSession(FakeResponse(status_code=429, headers={"Retry-After": "7"}))
    with pytest.raises(HistoryFetchError) as exc_info:
        await _history(test_settings, session).fetch("BTCUSDT", "5m", 10)
    assert exc_info.value.rate_limited
    assert exc_info.value.status == 429
    assert exc_info.value.retry_after == 7.0


@pytest.mark.parametrize("header", ["nan", "-3", "soon", ""])
@pytest.mark.asyncio
async def test_unusable_retry_after_is_dropped(test_settings, header):
    session = FakeSession(FakeResponse(status_code=418, headers={"Retry-After": header}))
    with pytest.raises(HistoryFetchError) as exc_info:
        await _history(test_settings, session).fetch("BTCUSDT", "5m", 10)
    assert exc_info.value.rate_limited
    assert exc_info.value.retry_after is None


@pytest.mark.asyncio
async def test_server_error_carries_status(test_settings):
    session = FakeSession(FakeResponse(status_code=500, text="oops"))
    with pytest.raises(HistoryFetchError) as exc_info:
        await _history(test_settings, session).fetch("BTCUSDT", "5m", 10)
    assert exc_info.value.status == 500
    assert not exc_info.value.rate_limited


@pytest.mark.asyncio
async def test_transport_error_wrapped(test_settings):
    session = FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(HistoryFetchError) as exc_info:
        await _history(test_settings, session).fetch("BTCUSDT", "5m", 10)
    assert exc_info.value.status is None


@pytest.mark.asyncio
async def test_non_list_payload_is_an_error(test_settings):
    session = FakeSession(FakeResponse(payload={"code": -1121, "msg": "Invalid symbol."}))
    with pytest.raises(HistoryFetchError):
        await _history(test_settings, session).fetch("NOPE", "5m", 10)


@pytest.mark.asyncio
async def test_invalid_json_is_an_error(test_settings):
    session = FakeSession(FakeResponse(payload=ValueError("bad json")))
    with pytest.raises(HistoryFetchError):
        await _history(test_settings, session).fetch("BTCUSDT", "5m", 10)


@pytest.mark.asyncio
async def test_hung_request_times_out(test_settings):
    settings = test_settings.model_copy(update={"fetch_timeout_seconds": 0.05})
    session = FakeSession(FakeResponse(payload=[]), delay=0.3)
    with pytest.raises(HistoryFetchError, match="timed out"):
        await BinanceHistory(settings, session=session).fetch("BTCUSDT", "5m", 10)


def test_parse_kline_row():
    candle = parse_kline_row(_row(1_000))
    assert candle == Candle(time=1_000, open=100.0, high=102.0, low=99.0, close=101.0, volume=12.5)
    with pytest.raises(MalformedCandleError):
        parse_kline_row([1, "2"])


def _kline_event(closed: bool, close: str = "101.0") -> dict:
    return {
        "e": "kline",
        "E": 1_700_000_000_123,
        "s": "BTCUSDT",
        "k": {
            "t": 1_699_999_800_000,
            "T": 1_700_000_099_999,
            "s": "BTCUSDT",
            "i": "5m",
            "o": "100.0",
            "c": close,
            "h": "102.0",
            "l": "99.0",
            "v": "12.5",
            "x": closed,
        },
    }


def test_candle_from_kline():
    candle, is_closed = candle_from_kline(_kline_event(closed=False))
    assert not is_closed
    assert not candle.is_closed
    assert candle.time == 1_699_999_800_000
    assert (candle.open, candle.high, candle.low, candle.close, candle.volume) == (100.0, 102.0, 99.0, 101.0, 12.5)


def test_candle_from_combined_stream_envelope():
    _, is_closed = candle_from_kline({"stream": "btcusdt@kline_5m", "data": _kline_event(closed=True)})
    assert is_closed


def test_non_kline_frames_ignored():
    assert candle_from_kline({"result": None, "id": 1}) is None
    assert candle_from_kline(["not", "a", "dict"]) is None


def test_broken_kline_raises():
    with pytest.raises(MalformedCandleError):
        candle_from_kline(_kline_event(closed=True, close="150.0"))
    with pytest.raises(MalformedCandleError):
        candle_from_kline({"e": "kline"})


def test_stream_url(test_settings):
    stream = BinanceKlineStream(test_settings)
    assert stream.url_for("BTCUSDT", "5m") == "wss://stream.binance.com:9443/ws/btcusdt@kline_5m"


class _FakeSocket:
    def __init__(self, frames):
        self.frames = frames

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for frame in self.frames:
            yield frame


@pytest.mark.asyncio
async def test_stream_skips_bad_frames(test_settings):
    stream = BinanceKlineStream(test_settings)
    frames = [
        "{not json",
        json.dumps({"result": None, "id": 1}),
        json.dumps(_kline_event(closed=True)),
        json.dumps(_kline_event(closed=True, close="-5")),
    ]
    updates = [u async for u in stream._updates(_FakeSocket(frames))]
    assert len(updates) == 1
    assert updates[0][1] is True
    assert stream.frames_skipped == 2
