#!/usr/bin/env python3
"""
Мульти-таймфрейм агрегация сигналов.
Версия: 3.0
Алгоритмы: взвешенное голосование таймфреймов, калибровка уверенности,
стоп/тейк от ATR с ограничением 15% / 30%.
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config.settings import AggregatorSettings
from context.scoring.components import base_confidence
from engine.errors import InsufficientConfluenceError
from engine.models import (
    MAX_STOP_PCT,
    MAX_TARGET_PCT,
    AggregatedSignal,
    ConfluenceScore,
    Direction,
    Signal,
    Timeframe,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 95

# ============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ
# ============================================================================

def round_half_up(value: float) -> int:
    """Округление 0.5 вверх (79.5 -> 80), без банковского округления."""
    return int(math.floor(value + 0.5))


def timeframe_confidence(raw_score: float, timeframe: Timeframe, multiplier: float = 1.0) -> int:
    """
    Уверенность одного таймфрейма.
    round(min(95, baseConfidence * reliabilityWeight * feedbackMultiplier))
    """
    adjusted = base_confidence(raw_score) * timeframe.weight * multiplier
    return max(0, round_half_up(min(float(MAX_CONFIDENCE), adjusted)))


def _bound(entry: float, target: float, max_pct: float) -> Tuple[float, bool]:
    """
    Ограничивает target так, чтобы |target - entry| / entry <= max_pct.
    Возвращает (цена, было_ли_ограничение).
    """
    if abs(target - entry) / entry <= max_pct:
        return target, False
    sign = 1.0 if target > entry else -1.0
    bounded = entry * (1.0 + sign * max_pct)
    # погрешность float: двигаем к entry, пока инвариант не выполнится
    while abs(bounded - entry) / entry > max_pct:
        bounded = math.nextafter(bounded, entry)
    return bounded, True


def _close_time(score: ConfluenceScore) -> int:
    return score.last_timestamp + score.timeframe.minutes * 60_000

# ============================================================================
# АГРЕГАТОР
# ============================================================================

class MultiTimeframeAggregator:
    """
    Сводит ConfluenceScore нескольких таймфреймов в один Signal.

    feedback — любой объект с методом confidence_multiplier(symbol, timeframe),
    возвращающим последний зафиксированный множитель (см. engine.feedback).
    """

    VERSION = "3.0.0"

    def __init__(self, config: Optional[AggregatorSettings] = None, feedback: Any = None):
        self.config = config or AggregatorSettings()
        self.feedback = feedback
        self.stats = {
            'signals_generated': 0,
            'rejected_degraded': 0,
            'bound_limited': 0,
        }

    def _multiplier(self, symbol: str, timeframe: Timeframe) -> float:
        if self.feedback is None:
            return 1.0
        return self.feedback.confidence_multiplier(symbol, timeframe)

    def aggregate(self, symbol: str, scores: Iterable[ConfluenceScore],
                  generated_at: Optional[datetime] = None) -> AggregatedSignal:
        """
        Консолидирует оценки таймфреймов.

        Args:
            symbol: торговая пара
            scores: по одной оценке конфлюэнса на таймфрейм
            generated_at: время выпуска (по умолчанию сейчас, UTC)

        Returns:
            AggregatedSignal: консолидированный сигнал и сигналы по таймфреймам

        Raises:
            InsufficientConfluenceError: доля деградированных таймфреймов выше порога
                или не осталось данных для цены входа / ATR.
        """
        scores = sorted(scores, key=lambda s: s.timeframe.rank)
        total = len(scores)
        if total == 0:
            raise InsufficientConfluenceError(f"{symbol}: нет ни одного таймфрейма", 0, 0)

        degraded = sum(1 for s in scores if s.degraded)
        if degraded / total > self.config.max_degraded_fraction:
            self.stats['rejected_degraded'] += 1
            raise InsufficientConfluenceError(
                f"{symbol}: деградировано {degraded} из {total} таймфреймов "
                f"(порог {self.config.max_degraded_fraction:.0%})",
                degraded, total,
            )

        usable = [s for s in scores if s.close is not None and s.last_timestamp is not None]
        if not usable:
            raise InsufficientConfluenceError(f"{symbol}: нет свечей ни на одном таймфрейме",
                                              degraded, total)

        generated_at = generated_at or utc_now()
        confidences = {
            s.timeframe: timeframe_confidence(s.raw_score, s.timeframe,
                                              self._multiplier(symbol, s.timeframe))
            for s in usable
        }

        direction = self._vote(usable)
        agreeing = [s for s in usable if s.direction is direction]
        total_weight = sum(s.timeframe.weight for s in usable)
        weighted = sum(s.timeframe.weight * confidences[s.timeframe] for s in agreeing)
        confidence = round_half_up(min(float(MAX_CONFIDENCE), weighted / total_weight))

        entry_score = max(usable, key=lambda s: (_close_time(s), -s.timeframe.rank))
        entry = entry_score.close
        primary = self._primary(symbol, direction, agreeing, usable, degraded, total)

        stop_loss, take_profit, limited = self._levels(direction, entry, primary.atr)
        consolidated = Signal(
            signal_id=uuid.uuid4().hex,
            symbol=symbol,
            timeframes=tuple(s.timeframe for s in scores),
            primary_timeframe=primary.timeframe,
            direction=direction,
            confidence=confidence,
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit=take_profit,
            volatility=primary.atr / entry,
            generated_at=generated_at,
            confluence_snapshot=tuple(scores),
            degraded=degraded > 0,
            bound_limited=limited,
        )

        per_timeframe = tuple(
            self._single(symbol, s, confidences[s.timeframe], generated_at)
            for s in usable if s.atr is not None
        )

        self.stats['signals_generated'] += 1
        if limited:
            self.stats['bound_limited'] += 1
        logger.info(f"📈 {symbol}: {direction.value} conf={confidence} entry={entry:.6g} "
                    f"SL={stop_loss:.6g} TP={take_profit:.6g} "
                    f"[{primary.timeframe.value}]{' (degraded)' if degraded else ''}")

        return AggregatedSignal(consolidated=consolidated, per_timeframe=per_timeframe)

    # ========================================================================
    # ГОЛОСОВАНИЕ
    # ========================================================================

    def _vote(self, scores: List[ConfluenceScore]) -> Direction:
        """
        Взвешенное голосование весами надежности.
        При равенстве побеждает направление старшего таймфрейма.
        """
        totals: Dict[Direction, float] = {}
        for s in scores:
            totals[s.direction] = totals.get(s.direction, 0.0) + s.timeframe.weight

        best = max(totals.values())
        tied = {d for d, w in totals.items() if math.isclose(w, best, rel_tol=1e-12)}
        if len(tied) == 1:
            return tied.pop()

        for s in sorted(scores, key=lambda s: s.timeframe.rank, reverse=True):
            if s.direction in tied:
                return s.direction
        raise AssertionError("unreachable")

    def _primary(self, symbol: str, direction: Direction, agreeing: List[ConfluenceScore],
                 usable: List[ConfluenceScore], degraded: int, total: int) -> ConfluenceScore:
        """Таймфрейм, чей ATR задает стоп: максимальный вес среди согласных, затем старший."""
        candidates = [s for s in agreeing if s.atr is not None]
        if not candidates and direction is Direction.NEUTRAL:
            candidates = [s for s in usable if s.atr is not None]
        if not candidates:
            raise InsufficientConfluenceError(
                f"{symbol}: нет ATR на таймфреймах направления {direction.value}",
                degraded, total,
            )
        return max(candidates, key=lambda s: (s.timeframe.weight, s.timeframe.rank))

    # ========================================================================
    # СТОП / ТЕЙК
    # ========================================================================

    def _levels(self, direction: Direction, entry: float, atr: float) -> Tuple[float, float, bool]:
        if direction is Direction.NEUTRAL:
            return entry, entry, False

        sign = direction.sign
        distance = atr * self.config.stop_atr_multiplier
        stop_loss = entry - sign * distance
        take_profit = entry + sign * distance * self.config.risk_reward

        stop_loss, stop_limited = _bound(entry, stop_loss, min(self.config.max_stop_pct, MAX_STOP_PCT))
        take_profit, target_limited = _bound(
            entry, take_profit, min(self.config.max_target_pct, MAX_TARGET_PCT))
        return stop_loss, take_profit, stop_limited or target_limited

    def _single(self, symbol: str, score: ConfluenceScore, confidence: int,
                generated_at: datetime) -> Signal:
        stop_loss, take_profit, limited = self._levels(score.direction, score.close, score.atr)
        return Signal(
            signal_id=uuid.uuid4().hex,
            symbol=symbol,
            timeframes=(score.timeframe,),
            primary_timeframe=score.timeframe,
            direction=score.direction,
            confidence=confidence,
            entry_price=score.close,
            stop_loss=stop_loss,
            take_profit=take_profit,
            volatility=score.atr / score.close,
            generated_at=generated_at,
            confluence_snapshot=(score,),
            degraded=score.degraded,
            bound_limited=limited,
        )

    def get_statistics(self) -> Dict[str, Any]:
        """Возвращает статистику агрегатора."""
        return {'version': self.VERSION, **self.stats}
