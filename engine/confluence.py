#!/usr/bin/env python3
"""
Оценка конфлюэнса одного таймфрейма.
Индикаторы + структура рынка -> категории -> взвешенная сумма -> направление и сила.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from config.settings import (
    CATEGORIES,
    ConfluenceSettings,
    IndicatorSettings,
    StructureSettings,
)
from context.scoring.scorer import compute_confluence_score, regime_weights
from engine.candles import CandleSeries
from engine.errors import InsufficientDataError
from engine.indicators import (
    INDICATOR_CATEGORY,
    IndicatorKind,
    IndicatorReport,
    compute_indicators,
)
from engine.models import ConfluenceScore, Direction, Regime, StrengthLabel, Timeframe
from engine.structure import MarketStructureAnalyzer, StructureAnalysis

logger = logging.getLogger(__name__)

STRUCTURE = "structure"


class ConfluenceScorer:
    """
    Калькулятор конфлюэнса.

    Каждый индикатор дает вклад в [-1, 1] в свою категорию
    (momentum, trend, volatility, volume, structure). rawScore — сумма
    весов категорий, умноженных на среднее категории. Веса корректируются
    множителями режима рынка и нормируются к 1. Отказавший индикатор
    не прерывает расчет: он не дает вклада и выставляет флаг degraded.
    """

    VERSION = "3.0.0"

    def __init__(self,
                 config: Optional[ConfluenceSettings] = None,
                 indicator_config: Optional[IndicatorSettings] = None,
                 structure_config: Optional[StructureSettings] = None):
        self.config = config or ConfluenceSettings()
        self.indicator_config = indicator_config or IndicatorSettings()
        self.structure_analyzer = MarketStructureAnalyzer(structure_config, self.indicator_config)

    def score(self, candles: Union[CandleSeries, Iterable[Any]],
              timeframe: Timeframe) -> ConfluenceScore:
        """
        Считает конфлюэнс по серии свечей одного таймфрейма.

        Args:
            candles: CandleSeries или последовательность свечей
            timeframe: таймфрейм серии

        Returns:
            ConfluenceScore (degraded=True при отказах индикаторов или пропусках данных)
        """
        if not isinstance(candles, CandleSeries):
            candles = CandleSeries.from_candles(candles, timeframe)

        report = compute_indicators(candles, self.indicator_config)

        structure = None
        structure_failure = None
        try:
            structure = self.structure_analyzer.analyze(candles)
        except InsufficientDataError as e:
            logger.warning(f"⚠️  {timeframe.value} structure: {e}")
            structure_failure = str(e)

        last = candles.last if len(candles) else None
        return self.combine(
            timeframe,
            report,
            structure,
            structure_failure=structure_failure,
            gaps=candles.gaps,
            close=last.close if last else None,
            last_timestamp=last.timestamp if last else None,
        )

    def combine(self, timeframe: Timeframe, report: IndicatorReport,
                structure: Optional[StructureAnalysis],
                structure_failure: Optional[str] = None,
                gaps: int = 0,
                close: Optional[float] = None,
                last_timestamp: Optional[int] = None) -> ConfluenceScore:
        """Собирает ConfluenceScore из готовых результатов индикаторов и структуры."""
        categories: Dict[str, List[float]] = {name: [] for name in CATEGORIES}
        contributions: Dict[str, float] = {}
        missing: List[str] = []

        for kind in IndicatorKind:
            result = report.get(kind)
            if result is None:
                missing.append(kind.value)
                continue
            categories[INDICATOR_CATEGORY[kind]].append(result.contribution)
            contributions[kind.value] = result.contribution

        regime = None
        supply_zones = demand_zones = levels = ()
        if structure is not None:
            categories[STRUCTURE].append(structure.contribution)
            contributions[STRUCTURE] = structure.contribution
            regime = structure.regime
            supply_zones = tuple(structure.supply_zones)
            demand_zones = tuple(structure.demand_zones)
            levels = tuple(structure.levels)
        else:
            missing.append(STRUCTURE)

        weights = self.weights_for(regime)
        result = compute_confluence_score(categories=categories, weights=weights)
        raw = result.score

        atr_result = report.get(IndicatorKind.ATR)
        degraded = bool(missing) or gaps > 0 or structure_failure is not None

        score = ConfluenceScore(
            timeframe=timeframe,
            raw_score=raw,
            direction=self.direction_of(raw),
            strength=self.strength_of(raw),
            categories=dict(result.components),
            contributions=contributions,
            missing=tuple(missing),
            degraded=degraded,
            gaps=gaps,
            close=close,
            atr=atr_result.value if atr_result is not None else None,
            last_timestamp=last_timestamp,
            regime=regime,
            weights=weights,
            supply_zones=supply_zones,
            demand_zones=demand_zones,
            levels=levels,
        )

        logger.debug(f"🎯 {timeframe.value}: raw={raw:+.3f} {score.direction.value} "
                     f"({score.strength.value}){' [degraded]' if degraded else ''}")
        return score

    def weights_for(self, regime: Optional[Regime]) -> Dict[str, float]:
        """Веса категорий с поправкой на режим (без режима — базовые)."""
        if regime is None:
            return dict(self.config.weights)
        return regime_weights(self.config.weights, self.config.regime_multipliers.get(regime.value))

    def direction_of(self, raw: float) -> Direction:
        if raw > self.config.dead_zone:
            return Direction.LONG
        if raw < -self.config.dead_zone:
            return Direction.SHORT
        return Direction.NEUTRAL

    def strength_of(self, raw: float) -> StrengthLabel:
        magnitude = abs(raw)
        if magnitude >= self.config.strong_threshold:
            return StrengthLabel.STRONG
        if magnitude >= self.config.moderate_threshold:
            return StrengthLabel.MODERATE
        return StrengthLabel.WEAK
