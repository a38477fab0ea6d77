#!/usr/bin/env python3
"""
Анализ рыночной структуры.
Режим рынка (тренд / консолидация / пробой), зоны спроса и предложения
по фрактальным свингам, психологические уровни (круглые числа и Фибоначчи).
"""
import math
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats, signal

from config.settings import IndicatorSettings, StructureSettings
from engine.errors import InsufficientDataError
from engine.indicators import CandleInput, as_frame, adx, atr_series, clip_unit
from engine.models import PsychLevel, Regime, Zone

logger = logging.getLogger(__name__)

FIB_RETRACEMENTS = (0.236, 0.382, 0.5, 0.618, 0.786)
FIB_EXTENSIONS = (1.272, 1.618)


@dataclass(frozen=True)
class StructureAnalysis:
    regime: Regime
    volatility_ratio: float
    adx: float
    trend_slope: float
    trend_r2: float
    supply_zones: Tuple[Zone, ...]
    demand_zones: Tuple[Zone, ...]
    levels: Tuple[PsychLevel, ...]
    swing_high: float
    swing_low: float
    contribution: float


def find_swings(values: np.ndarray, k: int, mode: str) -> np.ndarray:
    """
    Фрактальные свинги: значение строго выше (ниже) k соседей с каждой стороны.
    Крайние k свечей не рассматриваются.
    """
    comparator = np.greater if mode == 'high' else np.less
    idx = signal.argrelextrema(values, comparator, order=k)[0]
    return idx[(idx >= k) & (idx < len(values) - k)]


def merge_levels(raw: List[Tuple[float, str]], tolerance_pct: float) -> List[PsychLevel]:
    """Объединяет уровни, лежащие в пределах tolerance_pct друг от друга."""
    merged: List[PsychLevel] = []
    cluster: List[Tuple[float, str]] = []

    def flush():
        if cluster:
            price = float(np.mean([p for p, _ in cluster]))
            sources = tuple(dict.fromkeys(s for _, s in cluster))
            merged.append(PsychLevel(price=price, sources=sources))

    for price, source in sorted(raw):
        if cluster:
            anchor = cluster[0][0]
            if abs(price - anchor) / anchor <= tolerance_pct:
                cluster.append((price, source))
                continue
            flush()
        cluster = [(price, source)]
    flush()
    return merged


class MarketStructureAnalyzer:
    """
    Анализатор структуры рынка для одного таймфрейма.
    Пороги берутся из StructureSettings, а не задаются на каждый вызов.
    """

    def __init__(self, config: Optional[StructureSettings] = None,
                 indicator_config: Optional[IndicatorSettings] = None):
        self.config = config or StructureSettings()
        self.indicator_config = indicator_config or IndicatorSettings()

    def required_lookback(self) -> int:
        ind = self.indicator_config
        return max(2 * ind.adx_period, ind.atr_period + 1, 2 * self.config.swing_k + 1)

    def analyze(self, candles: CandleInput) -> StructureAnalysis:
        """
        Полный анализ структуры.

        Raises:
            InsufficientDataError: истории меньше required_lookback().
        """
        df = as_frame(candles)
        required = self.required_lookback()
        if len(df) < required:
            raise InsufficientDataError("structure", required, len(df))

        close = float(df['close'].iloc[-1])
        atr_values = atr_series(df, self.indicator_config.atr_period)
        current_atr = float(atr_values[-1])

        regime, vol_ratio, adx_value = self._classify_regime(df, atr_values)
        supply, demand, swing_high, swing_low = self._detect_zones(df, close, current_atr)
        levels = self._psychological_levels(df, close)
        slope, r2 = self._trend_fit(df)

        trend_term = math.copysign(r2, slope) if slope != 0 else 0.0
        zone_term = 0.0
        if supply and demand:
            d_supply = supply[0].distance(close)
            d_demand = demand[0].distance(close)
            if d_supply + d_demand > 0:
                zone_term = (d_supply - d_demand) / (d_supply + d_demand)
        contribution = clip_unit(0.7 * trend_term + 0.3 * zone_term)

        logger.debug(f"🧭 Структура: {regime.value}, vol_ratio={vol_ratio:.2f}, "
                     f"ADX={adx_value:.1f}, зон {len(supply)}/{len(demand)}, уровней {len(levels)}")

        return StructureAnalysis(
            regime=regime,
            volatility_ratio=vol_ratio,
            adx=adx_value,
            trend_slope=slope,
            trend_r2=r2,
            supply_zones=tuple(supply),
            demand_zones=tuple(demand),
            levels=tuple(levels),
            swing_high=swing_high,
            swing_low=swing_low,
            contribution=contribution,
        )

    # ========================================================================
    # РЕЖИМ
    # ========================================================================

    def _classify_regime(self, df: pd.DataFrame, atr_values: np.ndarray):
        window = atr_values[-self.config.volatility_window:]
        median = float(np.median(window))
        vol_ratio = float(atr_values[-1]) / median if median > 0 else 0.0
        adx_value = adx(df, self.indicator_config.adx_period).adx

        if vol_ratio >= self.config.breakout_volatility_ratio:
            regime = Regime.BREAKOUT
        elif adx_value >= self.config.adx_trend_threshold:
            regime = Regime.TRENDING
        else:
            regime = Regime.CONSOLIDATING
        return regime, vol_ratio, adx_value

    def _trend_fit(self, df: pd.DataFrame) -> Tuple[float, float]:
        closes = df['close'].to_numpy(dtype=float)[-self.config.fib_lookback:]
        if len(closes) < 3:
            return 0.0, 0.0
        fit = stats.linregress(np.arange(len(closes)), closes / closes[0])
        slope = float(fit.slope) if math.isfinite(fit.slope) else 0.0
        r2 = float(fit.rvalue) ** 2 if math.isfinite(fit.rvalue) else 0.0
        return slope, r2

    # ========================================================================
    # ЗОНЫ
    # ========================================================================

    def _cluster(self, df: pd.DataFrame, idx: np.ndarray, column: str,
                 kind: str, padding: float) -> List[Zone]:
        points = sorted(zip(df[column].to_numpy(dtype=float)[idx], idx))
        zones = []
        group: List[Tuple[float, int]] = []

        def flush():
            if group:
                prices = [p for p, _ in group]
                zones.append(Zone(
                    kind=kind,
                    low=min(prices) - padding,
                    high=max(prices) + padding,
                    touches=len(group),
                    last_index=int(max(i for _, i in group)),
                ))

        for price, i in points:
            if group and abs(price - group[0][0]) / group[0][0] > self.config.zone_tolerance_pct:
                flush()
                group = []
            group.append((price, i))
        flush()
        return zones

    def _detect_zones(self, df: pd.DataFrame, close: float, current_atr: float):
        k = self.config.swing_k
        highs = df['high'].to_numpy(dtype=float)
        lows = df['low'].to_numpy(dtype=float)
        high_idx = find_swings(highs, k, 'high')
        low_idx = find_swings(lows, k, 'low')
        padding = current_atr * self.config.zone_padding_atr

        # активные зоны: предложение не пробито вверх, спрос не пробит вниз
        supply = [z for z in self._cluster(df, high_idx, 'high', 'supply', padding)
                  if z.high >= close]
        demand = [z for z in self._cluster(df, low_idx, 'low', 'demand', padding)
                  if z.low <= close]
        supply.sort(key=lambda z: z.distance(close))
        demand.sort(key=lambda z: z.distance(close))

        limit = self.config.max_zones
        swing_high = float(highs[high_idx].max()) if len(high_idx) else float(highs.max())
        swing_low = float(lows[low_idx].min()) if len(low_idx) else float(lows.min())
        return supply[:limit], demand[:limit], swing_high, swing_low

    # ========================================================================
    # ПСИХОЛОГИЧЕСКИЕ УРОВНИ
    # ========================================================================

    def round_step(self, price: float) -> float:
        if self.config.round_number_step:
            return self.config.round_number_step
        return 10.0 ** (math.floor(math.log10(price)) - 1)

    def _psychological_levels(self, df: pd.DataFrame, close: float) -> List[PsychLevel]:
        raw: List[Tuple[float, str]] = []

        step = self.round_step(close)
        base = math.floor(close / step)
        n = self.config.round_levels
        for i in range(-n + 1, n + 1):
            price = (base + i) * step
            if price > 0:
                raw.append((price, "round"))

        window = df.iloc[-self.config.fib_lookback:]
        k = self.config.swing_k
        highs = window['high'].to_numpy(dtype=float)
        lows = window['low'].to_numpy(dtype=float)
        high_idx = find_swings(highs, k, 'high')
        low_idx = find_swings(lows, k, 'low')
        hi_pos = int(high_idx[np.argmax(highs[high_idx])]) if len(high_idx) else int(np.argmax(highs))
        lo_pos = int(low_idx[np.argmin(lows[low_idx])]) if len(low_idx) else int(np.argmin(lows))
        high, low = float(highs[hi_pos]), float(lows[lo_pos])
        span = high - low

        if span > 0:
            uptrend = lo_pos < hi_pos
            for r in FIB_RETRACEMENTS:
                price = high - r * span if uptrend else low + r * span
                raw.append((price, f"fib_{r}"))
            for e in FIB_EXTENSIONS:
                price = low + e * span if uptrend else high - e * span
                if price > 0:
                    raw.append((price, f"fib_{e}"))

        return merge_levels(raw, self.config.level_merge_tolerance_pct)
