#!/usr/bin/env python3
"""
Трекер точности прогнозов и обратная связь для агрегатора.

Состояние разбито на корзины (symbol, timeframe), у каждой свой замок:
закрытия в одной корзине сериализуются, разные символы не мешают друг другу.
После каждого терминального перехода корзина публикует новый неизменяемый
снимок PerformanceStats; агрегатор читает последний зафиксированный снимок без блокировок.
"""
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from backtest.metrics import MetricsAccumulator
from config.settings import FeedbackSettings
from engine.errors import InvalidSignalError, RecordClosedError, UnknownPredictionError
from engine.models import (
    AccuracyRecord,
    Direction,
    PerformanceStats,
    Signal,
    Timeframe,
    as_utc,
    utc_now,
)
from engine.state.machine import OutcomeStateMachine

logger = logging.getLogger(__name__)

BucketKey = Tuple[str, Timeframe]


@dataclass
class _Bucket:
    key: BucketKey
    snapshot: PerformanceStats
    metrics: MetricsAccumulator
    recent: Deque[bool]  # исходы последних закрытий: True = Win
    lock: threading.Lock = field(default_factory=threading.Lock)
    records: Dict[str, AccuracyRecord] = field(default_factory=dict)  # только Open
    history: "OrderedDict[str, AccuracyRecord]" = field(default_factory=OrderedDict)


class AccuracyTracker:
    """
    Закрывает прогнозы по фактическим исходам и ведет статистику.

    Множитель уверенности = clamp(1 + (winRate_recent - neutral) * sensitivity,
    min_multiplier, max_multiplier); до min_samples закрытий равен 1.0.

    Статистика ведется нарастающими итогами. Закрытые записи хранятся
    в ограниченной истории (history_size на корзину); вытесненные из нее
    идентификаторы забываются и считаются неизвестными.
    """

    def __init__(self, config: Optional[FeedbackSettings] = None):
        self.config = config or FeedbackSettings()
        self.machine = OutcomeStateMachine(self.config.breakeven_tolerance)
        self._buckets: Dict[BucketKey, _Bucket] = {}
        self._index: Dict[str, BucketKey] = {}
        self._arena_lock = threading.Lock()

    # ========================================================================
    # КОРЗИНЫ
    # ========================================================================

    def _bucket(self, symbol: str, timeframe: Timeframe) -> _Bucket:
        key = (symbol, timeframe)
        bucket = self._buckets.get(key)
        if bucket is None:
            with self._arena_lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    bucket = _Bucket(
                        key=key,
                        snapshot=PerformanceStats(symbol, timeframe),
                        metrics=MetricsAccumulator(self.config.profit_factor_cap,
                                                   self.config.breakeven_tolerance),
                        recent=deque(maxlen=self.config.recent_window),
                    )
                    self._buckets[key] = bucket
        return bucket

    def _commit(self, bucket: _Bucket) -> PerformanceStats:
        """Публикует новый снимок статистики корзины. Вызывается под замком."""
        cfg = self.config
        symbol, timeframe = bucket.key
        metrics = bucket.metrics.as_dict()

        multiplier = 1.0
        if metrics["count"] >= cfg.min_samples:
            recent_win_rate = sum(bucket.recent) / len(bucket.recent)
            raw = 1.0 + (recent_win_rate - cfg.neutral_win_rate) * cfg.sensitivity
            multiplier = max(cfg.min_multiplier, min(cfg.max_multiplier, raw))

        snapshot = PerformanceStats(
            symbol=symbol,
            timeframe=timeframe,
            win_rate=metrics["winrate"],
            profit_factor=metrics["profit_factor"],
            avg_return=metrics["avg_return"],
            sample_size=metrics["count"],
            wins=metrics["wins"],
            losses=metrics["losses"],
            breakevens=metrics["breakevens"],
            max_drawdown=metrics["max_dd"],
            multiplier=multiplier,
            version=bucket.snapshot.version + 1,
        )
        bucket.snapshot = snapshot
        logger.info(f"📊 {symbol} {timeframe.value}: winRate={snapshot.win_rate:.2f} "
                    f"PF={snapshot.profit_factor:.2f} n={snapshot.sample_size} "
                    f"mult={multiplier:.3f} v{snapshot.version}")
        return snapshot

    def _close(self, bucket: _Bucket, record: AccuracyRecord) -> List[str]:
        """Переносит закрытую запись в историю и обновляет итоги. Возвращает вытесненные id."""
        del bucket.records[record.prediction_id]
        bucket.history[record.prediction_id] = record
        bucket.metrics.add(record.realized_return, record.outcome.value)
        bucket.recent.append(record.outcome.value == "Win")

        evicted = []
        while len(bucket.history) > self.config.history_size:
            prediction_id, _ = bucket.history.popitem(last=False)
            evicted.append(prediction_id)
        return evicted

    def _forget(self, prediction_ids: Iterable[str]) -> None:
        # только без замка корзины: порядок arena -> bucket
        prediction_ids = list(prediction_ids)
        if not prediction_ids:
            return
        with self._arena_lock:
            for prediction_id in prediction_ids:
                self._index.pop(prediction_id, None)
        logger.debug(f"🧹 Вытеснено из истории: {len(prediction_ids)}")

    # ========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ ЗАПИСЕЙ
    # ========================================================================

    def track(self, signal: Signal, opened_at: Optional[datetime] = None) -> AccuracyRecord:
        """Начинает отслеживание сигнала (запись Open). Наивное время считается UTC."""
        if signal.direction is Direction.NEUTRAL:
            raise InvalidSignalError(f"{signal.signal_id}: NEUTRAL сигнал не отслеживается")

        timeframe = signal.primary_timeframe
        opened_at = as_utc(opened_at or signal.generated_at)
        timeout = timedelta(minutes=timeframe.minutes * self.config.hold_bars)
        record = AccuracyRecord(
            prediction_id=signal.signal_id,
            symbol=signal.symbol,
            timeframe=timeframe,
            direction=signal.direction,
            entry_price=signal.entry_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            opened_at=opened_at,
            timeout_at=opened_at + timeout,
        )

        bucket = self._bucket(signal.symbol, timeframe)
        with self._arena_lock:
            if record.prediction_id in self._index:
                raise InvalidSignalError(f"{record.prediction_id}: уже отслеживается")
            with bucket.lock:
                bucket.records[record.prediction_id] = record
            self._index[record.prediction_id] = bucket.key

        logger.debug(f"👁  Отслеживание {record.prediction_id} {signal.symbol} {timeframe.value}")
        return record

    def record_outcome(self, prediction_id: str, exit_price: float,
                       exit_time: Optional[datetime] = None) -> AccuracyRecord:
        """
        Переводит запись в терминальное состояние.

        Наивное exit_time считается UTC.

        Raises:
            UnknownPredictionError: идентификатор не отслеживается
            RecordClosedError: запись уже закрыта
        """
        key = self._index.get(prediction_id)
        if key is None:
            raise UnknownPredictionError(f"Прогноз не найден: {prediction_id}")
        exit_time = as_utc(exit_time or utc_now())

        bucket = self._buckets[key]
        with bucket.lock:
            record = bucket.records.get(prediction_id)
            if record is None:
                done = bucket.history.get(prediction_id)
                if done is None:
                    raise UnknownPredictionError(f"Прогноз не найден: {prediction_id}")
                raise RecordClosedError(f"{prediction_id}: уже закрыт как {done.outcome.value}")
            outcome = self.machine.on_exit(record, exit_price, exit_time)
            closed = self.machine.transition(record, outcome, exit_price, exit_time)
            evicted = self._close(bucket, closed)
            self._commit(bucket)
        self._forget(evicted)
        return closed

    def update_price(self, symbol: str, price: float,
                     at: Optional[datetime] = None) -> List[AccuracyRecord]:
        """Закрывает открытые записи символа, чей стоп/тейк пересечен или истек таймаут."""
        at = as_utc(at or utc_now())
        with self._arena_lock:
            buckets = [b for k, b in self._buckets.items() if k[0] == symbol]

        closed = []
        evicted = []
        for bucket in buckets:
            with bucket.lock:
                for record in list(bucket.records.values()):
                    outcome = self.machine.on_price(record, price, at)
                    if outcome is None:
                        continue
                    done = self.machine.transition(record, outcome, price, at)
                    evicted.extend(self._close(bucket, done))
                    closed.append(done)
                    self._commit(bucket)
        self._forget(evicted)
        return closed

    # ========================================================================
    # ЧТЕНИЕ
    # ========================================================================

    def get_record(self, prediction_id: str) -> AccuracyRecord:
        key = self._index.get(prediction_id)
        if key is None:
            raise UnknownPredictionError(f"Прогноз не найден: {prediction_id}")
        bucket = self._buckets[key]
        with bucket.lock:
            record = bucket.records.get(prediction_id) or bucket.history.get(prediction_id)
        if record is None:
            raise UnknownPredictionError(f"Прогноз не найден: {prediction_id}")
        return record

    def open_records(self, symbol: Optional[str] = None) -> List[AccuracyRecord]:
        with self._arena_lock:
            buckets = list(self._buckets.values())
        result = []
        for bucket in buckets:
            if symbol is not None and bucket.key[0] != symbol:
                continue
            with bucket.lock:
                result.extend(bucket.records.values())
        return result

    def get_performance(self, symbol: str, timeframe) -> PerformanceStats:
        """Последний зафиксированный снимок статистики (без блокировки)."""
        timeframe = Timeframe.parse(timeframe)
        bucket = self._buckets.get((symbol, timeframe))
        if bucket is None:
            return PerformanceStats(symbol=symbol, timeframe=timeframe)
        return bucket.snapshot

    def confidence_multiplier(self, symbol: str, timeframe) -> float:
        return self.get_performance(symbol, timeframe).multiplier
