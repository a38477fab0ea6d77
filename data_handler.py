#!/usr/bin/env python3
"""
Поставщики свечей для ядра сигналов.
В памяти (тесты, встраивание) и CSV-файлы через pandas.
"""
import logging
import os
from typing import Dict, Iterable, Optional, Tuple

import pandas as pd

from engine.candles import COLUMNS, CandleSeries
from engine.errors import InvalidCandleError
from engine.models import Timeframe

logger = logging.getLogger(__name__)


class CandleProvider:
    """Базовый поставщик: упорядоченная серия свечей на (symbol, timeframe)."""

    def __init__(self):
        self.stats = {
            'requests_total': 0,
            'requests_empty': 0,
        }

    def get_candles(self, symbol: str, timeframe: Timeframe) -> CandleSeries:
        self.stats['requests_total'] += 1
        series = self._load(symbol, Timeframe.parse(timeframe))
        if len(series) == 0:
            self.stats['requests_empty'] += 1
            logger.warning(f"⚠️  {symbol} {series.timeframe.value}: данные не получены")
        else:
            logger.debug(f"📊 {symbol} {series.timeframe.value}: загружено {len(series)} свечей")
        return series

    def _load(self, symbol: str, timeframe: Timeframe) -> CandleSeries:
        raise NotImplementedError


class InMemoryCandleProvider(CandleProvider):
    """Свечи, переданные напрямую (Candle, dict или кортежи OHLCV)."""

    def __init__(self, data: Optional[Dict[Tuple[str, str], Iterable]] = None):
        super().__init__()
        self._data: Dict[Tuple[str, Timeframe], CandleSeries] = {}
        for (symbol, tf), candles in (data or {}).items():
            self.add(symbol, tf, candles)

    def add(self, symbol: str, timeframe, candles: Iterable) -> None:
        tf = Timeframe.parse(timeframe)
        self._data[(symbol, tf)] = CandleSeries.from_candles(candles, tf)

    def _load(self, symbol: str, timeframe: Timeframe) -> CandleSeries:
        series = self._data.get((symbol, timeframe))
        if series is None:
            return CandleSeries.from_candles([], timeframe)
        return series


class CsvCandleProvider(CandleProvider):
    """
    CSV-файлы <SYMBOL>_<tf>.csv (символ без '/'), колонки
    timestamp, open, high, low, close, volume. timestamp — миллисекунды
    или строка даты.
    """

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = data_dir

    def path_for(self, symbol: str, timeframe: Timeframe) -> str:
        return os.path.join(self.data_dir, f"{symbol.replace('/', '')}_{timeframe.value}.csv")

    def _load(self, symbol: str, timeframe: Timeframe) -> CandleSeries:
        path = self.path_for(symbol, timeframe)
        if not os.path.exists(path):
            return CandleSeries.from_candles([], timeframe)

        df = pd.read_csv(path)
        missing = [c for c in COLUMNS if c not in df.columns]
        if missing:
            raise InvalidCandleError(f"{path}: нет колонок {missing}")

        if not pd.api.types.is_numeric_dtype(df['timestamp']):
            stamps = pd.to_datetime(df['timestamp'], utc=True)
            df['timestamp'] = (stamps - pd.Timestamp(0, tz='UTC')) // pd.Timedelta(milliseconds=1)

        return CandleSeries.from_frame(df, timeframe)
