# engine/candles.py
"""
Входной контракт свечей: проверка, поиск пропусков, конвертация в DataFrame.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from engine.errors import InvalidCandleError
from engine.models import Candle, Timeframe

logger = logging.getLogger(__name__)

COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]

# шаг больше 1.5 номинальной длительности считается пропуском
GAP_FACTOR = 1.5


def _coerce(item: Any) -> Candle:
    if isinstance(item, Candle):
        return item
    if isinstance(item, dict):
        return Candle.from_dict(item)
    try:
        ts, o, h, l, c, v = item
    except (TypeError, ValueError):
        raise InvalidCandleError(f"Неподдерживаемый формат свечи: {item!r}") from None
    return Candle(int(ts), float(o), float(h), float(l), float(c), float(v))


def _check_candle(candle: Candle, index: int) -> None:
    prices = (candle.open, candle.high, candle.low, candle.close)
    if not all(math.isfinite(p) and p > 0 for p in prices):
        raise InvalidCandleError(f"Свеча #{index}: цены должны быть > 0 ({candle})")
    if not math.isfinite(candle.volume) or candle.volume < 0:
        raise InvalidCandleError(f"Свеча #{index}: объем должен быть >= 0 ({candle})")
    if candle.high < candle.low:
        raise InvalidCandleError(f"Свеча #{index}: high < low ({candle})")
    if not (candle.low <= candle.open <= candle.high and candle.low <= candle.close <= candle.high):
        raise InvalidCandleError(f"Свеча #{index}: open/close вне диапазона high-low ({candle})")


def count_gaps(timestamps: Sequence[int], timeframe: Optional[Timeframe]) -> int:
    """Количество шагов между свечами, превышающих номинальную длительность."""
    if timeframe is None or len(timestamps) < 2:
        return 0
    nominal_ms = timeframe.minutes * 60_000
    steps = np.diff(np.asarray(timestamps, dtype=np.int64))
    return int(np.count_nonzero(steps > nominal_ms * GAP_FACTOR))


def validate_candles(candles: Iterable[Any]) -> Tuple[Candle, ...]:
    """
    Проверяет последовательность свечей.

    Raises:
        InvalidCandleError: дубликат или невозрастающий timestamp,
            неположительная цена, отрицательный объем, high < low.
    """
    result = []
    prev_ts = None
    for i, item in enumerate(candles):
        candle = _coerce(item)
        _check_candle(candle, i)
        if prev_ts is not None:
            if candle.timestamp == prev_ts:
                raise InvalidCandleError(f"Свеча #{i}: дубликат timestamp {candle.timestamp}")
            if candle.timestamp < prev_ts:
                raise InvalidCandleError(
                    f"Свеча #{i}: timestamp {candle.timestamp} меньше предыдущего {prev_ts}"
                )
        prev_ts = candle.timestamp
        result.append(candle)
    return tuple(result)


def to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """DataFrame с колонками OHLCV и DatetimeIndex (UTC)."""
    df = pd.DataFrame([c.to_dict() for c in candles], columns=COLUMNS)
    df = df.astype({"timestamp": "int64", **{c: float for c in COLUMNS[1:]}})
    df.index = pd.DatetimeIndex(pd.to_datetime(df["timestamp"], unit="ms", utc=True),
                                name="datetime")
    return df


@dataclass(frozen=True)
class CandleSeries:
    """Проверенная упорядоченная серия свечей одного таймфрейма."""
    timeframe: Optional[Timeframe]
    candles: Tuple[Candle, ...]
    gaps: int = 0
    frame: pd.DataFrame = field(default=None, repr=False, compare=False)

    @classmethod
    def from_candles(cls, candles: Iterable[Any],
                     timeframe: Optional[Timeframe] = None) -> "CandleSeries":
        checked = validate_candles(candles)
        gaps = count_gaps([c.timestamp for c in checked], timeframe)
        if gaps:
            logger.warning(f"⚠️  {timeframe.value if timeframe else '?'}: "
                           f"обнаружено пропусков в данных: {gaps}")
        return cls(timeframe=timeframe, candles=checked, gaps=gaps, frame=to_frame(checked))

    @classmethod
    def from_frame(cls, df: pd.DataFrame,
                   timeframe: Optional[Timeframe] = None) -> "CandleSeries":
        missing = [c for c in COLUMNS if c not in df.columns]
        if missing:
            raise InvalidCandleError(f"В DataFrame нет колонок: {missing}")
        rows = df[COLUMNS].itertuples(index=False, name=None)
        return cls.from_candles(rows, timeframe)

    def __len__(self) -> int:
        return len(self.candles)

    @property
    def last(self) -> Candle:
        return self.candles[-1]
