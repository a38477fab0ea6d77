#!/usr/bin/env python3
"""
Оркестратор ядра сигналов.
Координирует компоненты: свечи -> индикаторы/структура -> конфлюэнс ->
мульти-таймфрейм сигнал -> Monte Carlo риск -> обратная связь по точности.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, Optional

from config.settings import Settings, settings as default_settings
from data_handler import CandleProvider
from engine.confluence import ConfluenceScorer
from engine.errors import SignalEngineError
from engine.feedback import AccuracyTracker
from engine.models import (
    AccuracyRecord,
    AggregatedSignal,
    ConfluenceScore,
    PerformanceStats,
    RiskAssessment,
    Signal,
    Timeframe,
    utc_now,
)
from engine.risk import MonteCarloRiskEngine
from engine.signals import MultiTimeframeAggregator

logger = logging.getLogger(__name__)


class EngineRunner:
    """
    Основной класс, связывающий компоненты ядра.
    Расчеты по таймфреймам независимы и выполняются параллельно;
    агрегатор ждет все таймфреймы перед выпуском сигнала.
    """

    def __init__(self, provider: CandleProvider,
                 config: Optional[Settings] = None,
                 timeframes: Optional[List] = None,
                 tracker: Optional[AccuracyTracker] = None):
        self.config = config or default_settings
        self.provider = provider
        self.timeframes = ([Timeframe.parse(tf) for tf in timeframes]
                           if timeframes else self.config.get_timeframes())

        self.scorer = ConfluenceScorer(
            self.config.confluence,
            self.config.indicators,
            self.config.structure,
        )
        self.tracker = tracker or AccuracyTracker(self.config.feedback)
        self.aggregator = MultiTimeframeAggregator(self.config.aggregator, feedback=self.tracker)
        self.risk_engine = MonteCarloRiskEngine(self.config.monte_carlo)

        self.cycle_count = 0
        logger.info(f"🚀 EngineRunner: таймфреймы {', '.join(tf.value for tf in self.timeframes)}")

    # ========================================================================
    # СИГНАЛЫ
    # ========================================================================

    def score_timeframe(self, symbol: str, timeframe: Timeframe) -> ConfluenceScore:
        series = self.provider.get_candles(symbol, timeframe)
        return self.scorer.score(series, timeframe)

    def generate_signals(self, symbol: str) -> AggregatedSignal:
        """Консолидированный сигнал плюс сигналы по отдельным таймфреймам."""
        workers = min(self.config.aggregator.max_workers, len(self.timeframes))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            scores = list(pool.map(lambda tf: self.score_timeframe(symbol, tf), self.timeframes))
        return self.aggregator.aggregate(symbol, scores)

    def generate_signal(self, symbol: str) -> Signal:
        return self.generate_signals(symbol).consolidated

    # ========================================================================
    # РИСК И ОБРАТНАЯ СВЯЗЬ
    # ========================================================================

    def assess_risk(self, signal: Signal, seed: Optional[int] = None) -> RiskAssessment:
        return self.risk_engine.assess(signal, seed=seed)

    def track_signal(self, signal: Signal) -> AccuracyRecord:
        return self.tracker.track(signal)

    def record_outcome(self, prediction_id: str, exit_price: float,
                       exit_time: Optional[datetime] = None) -> AccuracyRecord:
        return self.tracker.record_outcome(prediction_id, exit_price, exit_time)

    def get_performance(self, symbol: str, timeframe) -> PerformanceStats:
        return self.tracker.get_performance(symbol, timeframe)

    # ========================================================================
    # ЦИКЛ
    # ========================================================================

    async def process_symbol(self, symbol: str, with_risk: bool = False) -> Dict:
        """Обрабатывает один символ за цикл."""
        result = {
            'symbol': symbol,
            'success': False,
            'timestamp': utc_now().isoformat(),
            'signal': None,
            'risk': None,
            'error': None,
        }
        try:
            signal = await asyncio.to_thread(self.generate_signal, symbol)
            result['signal'] = signal.to_dict()
            if with_risk and signal.direction.sign != 0:
                risk = await asyncio.to_thread(self.assess_risk, signal)
                result['risk'] = risk.to_dict()
            result['success'] = True
            logger.info(f"✅ {symbol}: {signal.direction.value} conf={signal.confidence}")
        except SignalEngineError as e:
            result['error'] = f"{type(e).__name__}: {e}"
            logger.warning(f"⚠️  {symbol}: {result['error']}")
        return result

    async def run_cycle(self, symbols: Optional[List[str]] = None,
                        with_risk: bool = False) -> Dict:
        """Выполняет один цикл анализа для всех символов параллельно."""
        symbols = symbols or self.config.default_symbols
        cycle_start = utc_now()
        self.cycle_count += 1
        logger.info(f"🔄 ЦИКЛ #{self.cycle_count} | {cycle_start.strftime('%H:%M:%S')}")

        tasks = [self.process_symbol(symbol, with_risk) for symbol in symbols]
        symbol_results = await asyncio.gather(*tasks, return_exceptions=True)

        results = {}
        for symbol, outcome in zip(symbols, symbol_results):
            if isinstance(outcome, Exception):
                logger.error(f"❌ Ошибка обработки {symbol}: {outcome}")
                results[symbol] = {'symbol': symbol, 'success': False, 'error': str(outcome)}
            else:
                results[symbol] = outcome

        successful = sum(1 for r in results.values() if r.get('success'))
        duration = (utc_now() - cycle_start).total_seconds()
        logger.info(f"📊 ИТОГИ ЦИКЛА #{self.cycle_count}: успешно {successful}/{len(symbols)}, "
                    f"{duration:.2f} сек")

        return {
            'cycle': self.cycle_count,
            'timestamp': cycle_start.isoformat(),
            'duration': duration,
            'results': results,
            'statistics': {
                'successful_symbols': successful,
                **self.aggregator.get_statistics(),
            },
        }
