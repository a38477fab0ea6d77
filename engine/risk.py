#!/usr/bin/env python3
"""
Monte Carlo оценка риска сигнала.

Геометрическое броуновское движение с волатильностью сигнала (ATR / entry)
и дрейфом от уверенности. Каждый запуск использует собственный генератор
numpy.random.default_rng(seed): одинаковые (signal, seed, path_count)
дают бит-в-бит одинаковые метрики.
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import numpy as np
from scipy import stats

from config.settings import MonteCarloSettings
from engine.errors import InvalidParameterError, InvalidSignalError
from engine.models import Direction, RiskAssessment, RiskLevel, Signal

logger = logging.getLogger(__name__)

# нормировки композитного риска
VAR_SCALE = 0.15
DRAWDOWN_SCALE = 0.30


def new_seed() -> int:
    """Свежий seed из энтропии ОС (сохраняется в RiskAssessment для повтора)."""
    return int(np.random.SeedSequence().generate_state(1, dtype=np.uint64)[0])


def spawn_seeds(base_seed: Optional[int], count: int) -> List[int]:
    """Независимые seed'ы для пакета симуляций."""
    children = np.random.SeedSequence(base_seed).spawn(count)
    return [int(c.generate_state(1, dtype=np.uint64)[0]) for c in children]


def sharpe_ratio(returns: np.ndarray) -> float:
    """Среднее / стандартное отклонение; 0 при нулевом разбросе."""
    if len(returns) < 2:
        return 0.0
    std = float(np.std(returns, ddof=1))
    if not math.isfinite(std) or std <= 1e-12:
        return 0.0
    return float(np.mean(returns)) / std


def risk_score(var95: float, max_drawdown: float, win_probability: float) -> float:
    """Композитный риск 0..100 (больше — рискованнее)."""
    var_term = min(1.0, max(0.0, -var95) / VAR_SCALE)
    dd_term = min(1.0, max(0.0, max_drawdown) / DRAWDOWN_SCALE)
    return 100.0 * (0.4 * var_term + 0.3 * dd_term + 0.3 * (1.0 - win_probability))


def risk_level_for(score: float) -> RiskLevel:
    if score < 25:
        return RiskLevel.LOW
    if score < 50:
        return RiskLevel.MEDIUM
    if score < 75:
        return RiskLevel.HIGH
    return RiskLevel.EXTREME


class MonteCarloRiskEngine:
    """Симулятор будущих ценовых путей для сигнала."""

    def __init__(self, config: Optional[MonteCarloSettings] = None):
        self.config = config or MonteCarloSettings()

    def validate(self, signal: Signal, volatility: float) -> None:
        """
        Raises:
            InvalidSignalError: NEUTRAL, стоп/тейк не на своей стороне от входа,
                неположительная волатильность.
        """
        entry = signal.entry_price
        if signal.direction is Direction.NEUTRAL:
            raise InvalidSignalError(f"{signal.signal_id}: NEUTRAL сигнал не моделируется")
        if not math.isfinite(entry) or entry <= 0:
            raise InvalidSignalError(f"{signal.signal_id}: некорректная цена входа {entry}")
        if not math.isfinite(volatility) or volatility <= 0:
            raise InvalidSignalError(f"{signal.signal_id}: волатильность должна быть > 0 ({volatility})")

        if signal.direction is Direction.LONG:
            ok_stop = signal.stop_loss < entry
            ok_target = signal.take_profit > entry
        else:
            ok_stop = signal.stop_loss > entry
            ok_target = signal.take_profit < entry
        if not ok_stop:
            raise InvalidSignalError(
                f"{signal.signal_id}: стоп {signal.stop_loss} не на стороне убытка "
                f"для {signal.direction.value} от {entry}"
            )
        if not ok_target:
            raise InvalidSignalError(
                f"{signal.signal_id}: тейк {signal.take_profit} не на стороне прибыли "
                f"для {signal.direction.value} от {entry}"
            )

    def assess(self, signal: Signal, seed: Optional[int] = None,
               path_count: Optional[int] = None,
               volatility: Optional[float] = None) -> RiskAssessment:
        """
        Оценивает риск сигнала.

        Args:
            signal: сигнал (entry, stop, target, direction, confidence)
            seed: seed генератора; None — новый seed, записывается в результат
            path_count: число путей (по умолчанию из настроек)
            volatility: волатильность на шаг (по умолчанию signal.volatility)
        """
        paths = self.config.path_count if path_count is None else path_count
        horizon = self.config.horizon_steps
        if paths <= 0:
            raise InvalidParameterError(f"path_count должен быть > 0, получено {paths}")
        if horizon <= 0:
            raise InvalidParameterError(f"horizon_steps должен быть > 0, получено {horizon}")

        sigma = signal.volatility if volatility is None else volatility
        self.validate(signal, sigma)
        if seed is None:
            seed = new_seed()

        returns, max_drawdown, wins = self._simulate(signal, sigma, seed, paths, horizon)

        expected = float(np.mean(returns))
        std = float(np.std(returns, ddof=1)) if paths > 1 else 0.0
        var95 = float(np.percentile(returns, 5))
        win_probability = float(np.mean(wins))
        score = risk_score(var95, max_drawdown, win_probability)

        z = float(stats.norm.ppf(0.975))
        half_width = z * std / math.sqrt(paths)

        assessment = RiskAssessment(
            signal_id=signal.signal_id,
            expected_return=expected,
            var95=var95,
            max_drawdown=max_drawdown,
            win_probability=win_probability,
            sharpe_ratio=sharpe_ratio(returns),
            risk_score=score,
            risk_level=risk_level_for(score),
            confidence_interval=(expected - half_width, expected + half_width),
            seed=seed,
            path_count=paths,
            horizon_steps=horizon,
        )
        logger.debug(f"🎲 {signal.symbol} {signal.direction.value}: win={win_probability:.3f} "
                     f"VaR95={var95:.4f} risk={score:.1f} ({assessment.risk_level.value}) seed={seed}")
        return assessment

    def _simulate(self, signal: Signal, sigma: float, seed: int, paths: int, horizon: int):
        rng = np.random.default_rng(seed)
        sign = signal.direction.sign
        entry = signal.entry_price

        mu = sign * signal.confidence / 100.0 * self.config.drift_scale
        shocks = rng.standard_normal((paths, horizon))
        log_paths = np.cumsum((mu - 0.5 * sigma ** 2) + sigma * shocks, axis=1)
        prices = entry * np.exp(log_paths)

        if sign > 0:
            hit_target = prices >= signal.take_profit
            hit_stop = prices <= signal.stop_loss
        else:
            hit_target = prices <= signal.take_profit
            hit_stop = prices >= signal.stop_loss

        never = horizon
        first_target = np.where(hit_target.any(axis=1), hit_target.argmax(axis=1), never)
        first_stop = np.where(hit_stop.any(axis=1), hit_stop.argmax(axis=1), never)
        wins = first_target < first_stop
        losses = first_stop < first_target

        exit_price = np.where(wins, signal.take_profit,
                              np.where(losses, signal.stop_loss, prices[:, -1]))
        returns = sign * (exit_price - entry) / entry

        # кривая капитала позиции; после выхода фиксируется реализованный результат
        exit_step = np.minimum(first_target, first_stop)
        steps = np.arange(horizon)
        equity = 1.0 + sign * (prices - entry) / entry
        equity = np.where(steps[None, :] < exit_step[:, None], equity, (1.0 + returns)[:, None])
        equity = np.hstack([np.ones((paths, 1)), equity])
        peaks = np.maximum.accumulate(equity, axis=1)
        max_drawdown = float(np.max((peaks - equity) / peaks))

        return returns, max_drawdown, wins

    def assess_batch(self, signals: Sequence[Signal],
                     seeds: Optional[Sequence[int]] = None,
                     base_seed: Optional[int] = None,
                     max_workers: int = 4) -> List[RiskAssessment]:
        """
        Независимые симуляции для нескольких сигналов.
        Каждая получает свой генератор, порядок выполнения не влияет на результат.
        """
        if seeds is None:
            seeds = spawn_seeds(base_seed, len(signals))
        if len(seeds) != len(signals):
            raise InvalidParameterError(
                f"seeds: ожидалось {len(signals)} значений, получено {len(seeds)}"
            )
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            return list(pool.map(lambda pair: self.assess(pair[0], seed=pair[1]),
                                 zip(signals, seeds)))
