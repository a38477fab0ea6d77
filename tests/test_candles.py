import pandas as pd
import pytest

from engine.candles import CandleSeries, count_gaps, to_frame, validate_candles
from engine.errors import InvalidCandleError
from engine.models import Candle, Timeframe

HOUR = 3_600_000


def _c(i, close=100.0, volume=10.0, ts=None):
    return Candle(ts if ts is not None else i * HOUR, close, close + 1, close - 1, close, volume)


def test_accepts_mixed_input_forms():
    candles = validate_candles([
        _c(0),
        {"timestamp": HOUR, "open": 100, "high": 101, "low": 99, "close": 100, "volume": 5},
        (2 * HOUR, 100, 101, 99, 100.5, 0),
    ])
    assert [c.timestamp for c in candles] == [0, HOUR, 2 * HOUR]
    assert candles[2].close == 100.5


@pytest.mark.parametrize("candles", [
    [_c(0), _c(1, ts=0)],
    [_c(0), _c(2), _c(1)],
    [_c(0, volume=-1.0)],
    [Candle(0, 100.0, 99.0, 101.0, 100.0, 1.0)],
    [Candle(0, 0.0, 1.0, 0.0, 0.5, 1.0)],
    [Candle(0, 105.0, 101.0, 99.0, 100.0, 1.0)],
    ["garbage"],
])
def test_rejects_invalid_candles(candles):
    with pytest.raises(InvalidCandleError):
        validate_candles(candles)


def test_invalid_candle_is_value_error():
    with pytest.raises(ValueError):
        validate_candles([_c(0), _c(0)])


def test_gap_counting():
    stamps = [0, HOUR, 2 * HOUR, 5 * HOUR, 6 * HOUR, 9 * HOUR]
    assert count_gaps(stamps, Timeframe.H1) == 2
    assert count_gaps(stamps, Timeframe.H4) == 0
    assert count_gaps(stamps, None) == 0


def test_series_records_gaps():
    series = CandleSeries.from_candles([_c(0), _c(1), _c(4)], Timeframe.H1)
    assert series.gaps == 1
    assert len(series) == 3
    assert series.last.timestamp == 4 * HOUR


def test_frame_conversion():
    df = to_frame([_c(0), _c(1, close=102.0)])
    assert list(df.columns) == ["timestamp", "open", "high", "low", "close", "volume"]
    assert df.index[1] == pd.Timestamp(HOUR, unit="ms", tz="UTC")
    assert df["close"].tolist() == [100.0, 102.0]

    empty = CandleSeries.from_candles([], Timeframe.H1)
    assert len(empty) == 0
    assert empty.frame.empty


def test_from_frame():
    df = to_frame([_c(i) for i in range(3)])
    series = CandleSeries.from_frame(df, Timeframe.H1)
    assert series.candles == tuple(_c(i) for i in range(3))
    with pytest.raises(InvalidCandleError):
        CandleSeries.from_frame(df.drop(columns=["volume"]), Timeframe.H1)
