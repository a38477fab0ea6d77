#!/usr/bin/env python3
"""
Библиотека индикаторов: RSI, MACD, EMA, ADX, ATR, Bollinger Bands, сессионный VWAP.

Все функции чистые: получают упорядоченную серию свечей и параметры,
возвращают типизированный результат (RSIResult, MACDResult, ...) с нормализованным
направленным вкладом в [-1, +1] либо бросают InsufficientDataError,
если свечей меньше required_lookback.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from config.settings import IndicatorSettings
from engine.candles import CandleSeries, to_frame
from engine.errors import InsufficientDataError, InvalidParameterError
from engine.models import Candle, Timeframe

logger = logging.getLogger(__name__)

CandleInput = Union[CandleSeries, pd.DataFrame, Sequence[Candle]]

# ============================================================================
# ТИПЫ РЕЗУЛЬТАТОВ
# ============================================================================

class IndicatorKind(str, Enum):
    """Закрытый набор индикаторов."""
    RSI = "rsi"
    MACD = "macd"
    EMA = "ema"
    ADX = "adx"
    ATR = "atr"
    BOLLINGER = "bollinger"
    VWAP = "vwap"


# Категория конфлюэнса для каждого индикатора
INDICATOR_CATEGORY: Dict[IndicatorKind, str] = {
    IndicatorKind.RSI: "momentum",
    IndicatorKind.MACD: "momentum",
    IndicatorKind.EMA: "trend",
    IndicatorKind.ADX: "trend",
    IndicatorKind.ATR: "volatility",
    IndicatorKind.BOLLINGER: "volatility",
    IndicatorKind.VWAP: "volume",
}


@dataclass(frozen=True)
class RSIResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.RSI
    period: int
    value: float
    contribution: float


@dataclass(frozen=True)
class MACDResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.MACD
    fast: int
    slow: int
    signal_period: int
    macd: float
    signal: float
    histogram: float
    contribution: float


@dataclass(frozen=True)
class EMAResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.EMA
    period: int
    value: float
    close: float
    contribution: float


@dataclass(frozen=True)
class ADXResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.ADX
    period: int
    adx: float
    plus_di: float
    minus_di: float
    contribution: float


@dataclass(frozen=True)
class ATRResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.ATR
    period: int
    value: float
    close: float
    contribution: float


@dataclass(frozen=True)
class BollingerResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.BOLLINGER
    period: int
    num_std: float
    middle: float
    upper: float
    lower: float
    bandwidth: float
    contribution: float


@dataclass(frozen=True)
class VWAPResult:
    kind: ClassVar[IndicatorKind] = IndicatorKind.VWAP
    session_start: int  # timestamp начала сессии, мс
    vwap: float
    std: float
    upper_1: float
    lower_1: float
    upper_2: float
    lower_2: float
    contribution: float


IndicatorResult = Union[
    RSIResult, MACDResult, EMAResult, ADXResult, ATRResult, BollingerResult, VWAPResult
]

# ============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ
# ============================================================================

def as_frame(candles: CandleInput) -> pd.DataFrame:
    if isinstance(candles, CandleSeries):
        return candles.frame
    if isinstance(candles, pd.DataFrame):
        return candles
    return to_frame(list(candles))


def _check_period(name: str, period: Any) -> None:
    if isinstance(period, bool) or not isinstance(period, (int, np.integer)) or period <= 0:
        raise InvalidParameterError(f"{name}: период должен быть целым > 0, получено {period!r}")


def _require(indicator: str, required: int, available: int) -> None:
    if available < required:
        raise InsufficientDataError(indicator, required, available)


def clip_unit(x: float) -> float:
    """Ограничивает значение диапазоном [-1, 1]."""
    if not math.isfinite(x):
        return 0.0
    return float(max(-1.0, min(1.0, x)))


def seeded_smoothing(values: np.ndarray, period: int, alpha: float) -> np.ndarray:
    """
    Рекурсивное сглаживание с затравкой средним арифметическим первых period значений.

    Первый элемент результата — затравка (SMA окна), далее
    y[t] = alpha * x[t] + (1 - alpha) * y[t-1].
    Длина результата: len(values) - period + 1.
    """
    seed = float(np.mean(values[:period]))
    seeded = pd.Series(np.concatenate(([seed], np.asarray(values[period:], dtype=float))))
    return seeded.ewm(alpha=alpha, adjust=False).mean().to_numpy()


def ema_series(values: np.ndarray, period: int) -> np.ndarray:
    """EMA с альфой 2/(period+1)."""
    _require("EMA", period, len(values))
    return seeded_smoothing(values, period, 2.0 / (period + 1))


def wilder_series(values: np.ndarray, period: int) -> np.ndarray:
    """Сглаживание Уайлдера (alpha = 1/period)."""
    _require("Wilder", period, len(values))
    return seeded_smoothing(values, period, 1.0 / period)


def true_range(df: pd.DataFrame) -> np.ndarray:
    """True range начиная со второй свечи (нужен предыдущий close)."""
    high = df['high'].to_numpy(dtype=float)
    low = df['low'].to_numpy(dtype=float)
    close = df['close'].to_numpy(dtype=float)
    prev_close = close[:-1]
    h, l = high[1:], low[1:]
    return np.maximum.reduce([h - l, np.abs(h - prev_close), np.abs(l - prev_close)])


def atr_series(candles: CandleInput, period: int = 14) -> np.ndarray:
    """Серия ATR (Wilder), выровненная по последним свечам."""
    _check_period("ATR", period)
    df = as_frame(candles)
    _require("ATR", period + 1, len(df))
    return wilder_series(true_range(df), period)


def _directional_movement(df: pd.DataFrame):
    high = df['high'].to_numpy(dtype=float)
    low = df['low'].to_numpy(dtype=float)
    up = high[1:] - high[:-1]
    down = low[:-1] - low[1:]
    plus_dm = np.where((up > down) & (up > 0), up, 0.0)
    minus_dm = np.where((down > up) & (down > 0), down, 0.0)
    return plus_dm, minus_dm


def _ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    return np.divide(num, den, out=np.zeros_like(num, dtype=float), where=den > 0)

# ============================================================================
# ТРЕБУЕМАЯ ИСТОРИЯ
# ============================================================================

def required_lookback(kind: IndicatorKind, config: Optional[IndicatorSettings] = None) -> int:
    """Минимальное число свечей для индикатора."""
    cfg = config or IndicatorSettings()
    if kind is IndicatorKind.RSI:
        return cfg.rsi_period + 1
    if kind is IndicatorKind.MACD:
        return cfg.macd_slow + cfg.macd_signal - 1
    if kind is IndicatorKind.EMA:
        return cfg.ema_period
    if kind is IndicatorKind.ADX:
        return 2 * cfg.adx_period
    if kind is IndicatorKind.ATR:
        return cfg.atr_period + 1
    if kind is IndicatorKind.BOLLINGER:
        return cfg.bollinger_period
    if kind is IndicatorKind.VWAP:
        return 1
    raise InvalidParameterError(f"Неизвестный индикатор: {kind!r}")

# ============================================================================
# ИНДИКАТОРЫ
# ============================================================================

def rsi_contribution(value: float) -> float:
    """
    Mean-reversion оценка RSI.
    <= 30 перепроданность (бычий вклад), >= 70 перекупленность (медвежий),
    45..55 нейтрально, между ними линейно.
    """
    if value <= 30:
        return 0.3 + 0.7 * (30 - value) / 30
    if value < 45:
        return 0.3 * (45 - value) / 15
    if value <= 55:
        return 0.0
    if value < 70:
        return -0.3 * (value - 55) / 15
    return -(0.3 + 0.7 * (value - 70) / 30)


def rsi(candles: CandleInput, period: int = 14) -> RSIResult:
    """
    RSI со сглаживанием Уайлдера.

    Первые period изменений цены только затравливают средние.
    Без изменений цены за окно RSI = 50.
    """
    _check_period("RSI", period)
    closes = as_frame(candles)['close'].to_numpy(dtype=float)
    _require("RSI", period + 1, len(closes))

    deltas = np.diff(closes)
    avg_gain = wilder_series(np.clip(deltas, 0, None), period)[-1]
    avg_loss = wilder_series(np.clip(-deltas, 0, None), period)[-1]

    if avg_gain == 0 and avg_loss == 0:
        value = 50.0
    elif avg_loss == 0:
        value = 100.0
    else:
        value = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    value = float(min(100.0, max(0.0, value)))

    return RSIResult(period=period, value=value, contribution=rsi_contribution(value))


def macd(candles: CandleInput, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
    """MACD = EMA(fast) - EMA(slow); сигнальная линия = EMA(macd, signal)."""
    for name, p in (("fast", fast), ("slow", slow), ("signal", signal)):
        _check_period(f"MACD.{name}", p)
    if fast >= slow:
        raise InvalidParameterError(f"MACD: fast ({fast}) должен быть меньше slow ({slow})")

    closes = as_frame(candles)['close'].to_numpy(dtype=float)
    _require("MACD", slow + signal - 1, len(closes))

    fast_ema = ema_series(closes, fast)[slow - fast:]
    slow_ema = ema_series(closes, slow)
    macd_line = fast_ema - slow_ema
    signal_line = ema_series(macd_line, signal)
    hist = macd_line[signal - 1:] - signal_line

    last_hist = float(hist[-1])
    scale = float(np.std(hist)) if len(hist) > 1 else 0.0
    if scale <= 0:
        scale = abs(last_hist)
    contribution = math.tanh(last_hist / scale) if scale > 0 else 0.0

    return MACDResult(
        fast=fast,
        slow=slow,
        signal_period=signal,
        macd=float(macd_line[-1]),
        signal=float(signal_line[-1]),
        histogram=last_hist,
        contribution=clip_unit(contribution),
    )


def ema(candles: CandleInput, period: int = 20) -> EMAResult:
    """EMA; вклад = отклонение close от EMA, 2% = полный сигнал."""
    _check_period("EMA", period)
    closes = as_frame(candles)['close'].to_numpy(dtype=float)
    _require("EMA", period, len(closes))

    value = float(ema_series(closes, period)[-1])
    close = float(closes[-1])
    return EMAResult(
        period=period,
        value=value,
        close=close,
        contribution=clip_unit((close - value) / value / 0.02),
    )


def adx(candles: CandleInput, period: int = 14) -> ADXResult:
    """ADX с +DI/-DI; вклад = направление DI, масштабированное силой тренда."""
    _check_period("ADX", period)
    df = as_frame(candles)
    _require("ADX", 2 * period, len(df))

    tr = wilder_series(true_range(df), period)
    plus_dm, minus_dm = _directional_movement(df)
    plus_di = 100.0 * _ratio(wilder_series(plus_dm, period), tr)
    minus_di = 100.0 * _ratio(wilder_series(minus_dm, period), tr)
    dx = 100.0 * _ratio(np.abs(plus_di - minus_di), plus_di + minus_di)
    adx_value = float(wilder_series(dx, period)[-1])

    pdi, mdi = float(plus_di[-1]), float(minus_di[-1])
    if pdi + mdi > 0:
        contribution = (pdi - mdi) / (pdi + mdi) * min(1.0, adx_value / 25.0)
    else:
        contribution = 0.0

    return ADXResult(
        period=period,
        adx=adx_value,
        plus_di=pdi,
        minus_di=mdi,
        contribution=clip_unit(contribution),
    )


def atr(candles: CandleInput, period: int = 14) -> ATRResult:
    """ATR (Wilder); вклад = последнее изменение close в единицах ATR."""
    df = as_frame(candles)
    series = atr_series(df, period)
    closes = df['close'].to_numpy(dtype=float)
    value = float(series[-1])
    move = float(closes[-1] - closes[-2])
    return ATRResult(
        period=period,
        value=value,
        close=float(closes[-1]),
        contribution=clip_unit(move / value) if value > 0 else 0.0,
    )


def bollinger(candles: CandleInput, period: int = 20, num_std: float = 2.0) -> BollingerResult:
    """Полосы Боллинджера; вклад mean-reversion: у верхней полосы медвежий."""
    _check_period("Bollinger", period)
    if num_std <= 0:
        raise InvalidParameterError(f"Bollinger: num_std должен быть > 0, получено {num_std}")
    closes = as_frame(candles)['close'].to_numpy(dtype=float)
    _require("Bollinger", period, len(closes))

    window = closes[-period:]
    middle = float(np.mean(window))
    std = float(np.std(window))
    upper = middle + num_std * std
    lower = middle - num_std * std
    close = float(closes[-1])
    contribution = -clip_unit((close - middle) / (upper - middle)) if std > 0 else 0.0

    return BollingerResult(
        period=period,
        num_std=num_std,
        middle=middle,
        upper=upper,
        lower=lower,
        bandwidth=(upper - lower) / middle,
        contribution=contribution,
    )


# Длины сессий VWAP (часы): сутки, неделя, 30 дней, квартал, год
_SESSION_STEPS_HOURS = (168, 720, 2184, 8760)


def session_hours_for(timeframe: Optional[Timeframe], base_hours: int = 24,
                      min_bars: int = 5) -> int:
    """
    Длина сессии VWAP под таймфрейм: base_hours, либо ближайшая более
    длинная ступень, вмещающая не меньше min_bars свечей.
    """
    if timeframe is None:
        return base_hours
    need_minutes = timeframe.minutes * min_bars
    candidates = [base_hours] + [h for h in _SESSION_STEPS_HOURS if h > base_hours]
    for hours in candidates:
        if hours * 60 >= need_minutes:
            return hours
    return candidates[-1]


def vwap(candles: CandleInput, session_hours: int = 24,
         timeframe: Optional[Timeframe] = None, min_session_bars: int = 5) -> VWAPResult:
    """
    VWAP текущей сессии с полосами ±1σ и ±2σ.

    Сессия — окно session_hours от эпохи UTC; накопление сбрасывается
    на каждой границе. Для старших таймфреймов окно растягивается
    (см. session_hours_for), иначе сессия дневных свечей состоит из одной свечи.
    Сессия без объема — InsufficientDataError.
    """
    _check_period("VWAP", session_hours)
    _check_period("VWAP", min_session_bars)
    if timeframe is None and isinstance(candles, CandleSeries):
        timeframe = candles.timeframe
    session_hours = session_hours_for(timeframe, session_hours, min_session_bars)
    df = as_frame(candles)
    _require("VWAP", 1, len(df))

    session_ms = session_hours * 3_600_000
    ts = df['timestamp'].to_numpy(dtype=np.int64)
    session_start = int(ts[-1] // session_ms * session_ms)
    session = df[ts >= session_start]

    typical = ((session['high'] + session['low'] + session['close']) / 3.0).to_numpy(dtype=float)
    volume = session['volume'].to_numpy(dtype=float)
    total_volume = float(volume.sum())
    if total_volume <= 0:
        raise InsufficientDataError("VWAP", 1, 0, reason="VWAP: нулевой объем в текущей сессии")

    value = float(np.dot(volume, typical) / total_volume)
    variance = 0.0  # одна свеча в сессии: полос нет
    if len(typical) > 1:
        variance = float(np.dot(volume, (typical - value) ** 2) / total_volume)
    std = math.sqrt(max(0.0, variance))
    close = float(df['close'].iloc[-1])

    return VWAPResult(
        session_start=session_start,
        vwap=value,
        std=std,
        upper_1=value + std,
        lower_1=value - std,
        upper_2=value + 2 * std,
        lower_2=value - 2 * std,
        contribution=clip_unit((close - value) / (2 * std)) if std > 0 else 0.0,
    )

# ============================================================================
# НАБОР ИНДИКАТОРОВ
# ============================================================================

@dataclass(frozen=True)
class IndicatorReport:
    """Результаты всех индикаторов таймфрейма и причины отказов."""
    results: Dict[IndicatorKind, IndicatorResult] = field(default_factory=dict)
    failures: Dict[IndicatorKind, str] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.failures)

    def get(self, kind: IndicatorKind) -> Optional[IndicatorResult]:
        return self.results.get(kind)


def compute_indicators(candles: CandleInput,
                       config: Optional[IndicatorSettings] = None,
                       timeframe: Optional[Timeframe] = None) -> IndicatorReport:
    """
    Считает все индикаторы. InsufficientDataError отдельного индикатора
    не прерывает расчет, а попадает в failures.

    timeframe (по умолчанию берется из CandleSeries) задает длину сессии VWAP.
    """
    cfg = config or IndicatorSettings()
    if timeframe is None and isinstance(candles, CandleSeries):
        timeframe = candles.timeframe
    df = as_frame(candles)

    calls = {
        IndicatorKind.RSI: lambda: rsi(df, cfg.rsi_period),
        IndicatorKind.MACD: lambda: macd(df, cfg.macd_fast, cfg.macd_slow, cfg.macd_signal),
        IndicatorKind.EMA: lambda: ema(df, cfg.ema_period),
        IndicatorKind.ADX: lambda: adx(df, cfg.adx_period),
        IndicatorKind.ATR: lambda: atr(df, cfg.atr_period),
        IndicatorKind.BOLLINGER: lambda: bollinger(df, cfg.bollinger_period, cfg.bollinger_std),
        IndicatorKind.VWAP: lambda: vwap(df, cfg.vwap_session_hours, timeframe,
                                           cfg.vwap_min_session_bars),
    }

    results = {}
    failures = {}
    for kind, call in calls.items():
        try:
            results[kind] = call()
        except InsufficientDataError as e:
            logger.warning(f"⚠️  {kind.value}: {e}")
            failures[kind] = str(e)

    logger.debug(f"📊 Индикаторы: {len(results)} ok, {len(failures)} пропущено")
    return IndicatorReport(results=results, failures=failures)
