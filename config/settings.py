#!/usr/bin/env python3
"""
Конфигурация ядра сигналов.
Все настройки в одном месте с валидацией.
"""
import os
import json
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, asdict, field
from enum import Enum
import logging
from dotenv import load_dotenv

from engine.errors import InvalidParameterError
from engine.models import MAX_STOP_PCT, MAX_TARGET_PCT, Regime, Timeframe

# Загружаем переменные окружения
load_dotenv()

logger = logging.getLogger(__name__)

CATEGORIES = ("momentum", "trend", "volatility", "volume", "structure")

# Допустимые границы множителя обратной связи
MIN_FEEDBACK_MULTIPLIER = 0.9
MAX_FEEDBACK_MULTIPLIER = 1.1


class LogLevel(str, Enum):
    """Уровни логирования."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _raise_if(section: str, errors: List[str]):
    if errors:
        error_msg = "\n".join([f"  • {error}" for error in errors])
        raise InvalidParameterError(f"Ошибки конфигурации ({section}):\n{error_msg}")


@dataclass
class IndicatorSettings:
    """Периоды индикаторов."""
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    ema_period: int = 20
    adx_period: int = 14
    atr_period: int = 14
    bollinger_period: int = 20
    bollinger_std: float = 2.0
    vwap_session_hours: int = 24  # длина сессии VWAP
    vwap_min_session_bars: int = 5  # сессия растягивается, пока не вместит столько свечей

    def __post_init__(self):
        _raise_if("indicators", self.errors())

    def errors(self) -> List[str]:
        errors = []
        for name in ("rsi_period", "macd_fast", "macd_slow", "macd_signal", "ema_period",
                     "adx_period", "atr_period", "bollinger_period", "vwap_session_hours",
                     "vwap_min_session_bars"):
            if getattr(self, name) <= 0:
                errors.append(f"indicators.{name} должен быть > 0")
        if self.macd_fast >= self.macd_slow:
            errors.append("indicators.macd_fast должен быть меньше macd_slow")
        if self.bollinger_std <= 0:
            errors.append("indicators.bollinger_std должен быть > 0")
        return errors


@dataclass
class StructureSettings:
    """Параметры анализа рыночной структуры."""
    swing_k: int = 2  # свечей с каждой стороны фрактала
    zone_tolerance_pct: float = 0.005  # 0.5% для кластеризации свингов
    zone_padding_atr: float = 0.25  # ширина зоны в долях ATR
    max_zones: int = 5
    adx_trend_threshold: float = 25.0
    breakout_volatility_ratio: float = 1.5  # ATR / медиана ATR
    volatility_window: int = 50
    round_number_step: Optional[float] = None  # None = автоматически от цены
    round_levels: int = 3
    fib_lookback: int = 100
    level_merge_tolerance_pct: float = 0.002

    def __post_init__(self):
        _raise_if("structure", self.errors())

    def errors(self) -> List[str]:
        errors = []
        if self.swing_k <= 0:
            errors.append("structure.swing_k должен быть > 0")
        if self.round_number_step is not None and self.round_number_step <= 0:
            errors.append("structure.round_number_step должен быть > 0")
        if self.breakout_volatility_ratio <= 1.0:
            errors.append("structure.breakout_volatility_ratio должен быть > 1")
        if self.volatility_window <= 0 or self.fib_lookback <= 0 or self.max_zones <= 0:
            errors.append("structure: окна и лимиты должны быть > 0")
        if self.round_levels <= 0:
            errors.append("structure.round_levels должен быть > 0")
        return errors


@dataclass
class ConfluenceSettings:
    """Веса категорий, поправки на режим и пороги конфлюэнса."""
    weights: Dict[str, float] = field(default_factory=lambda: {
        "momentum": 0.25,
        "trend": 0.25,
        "volatility": 0.15,
        "volume": 0.15,
        "structure": 0.20,
    })
    # множители весов категорий по режиму рынка; веса затем нормируются к 1
    regime_multipliers: Dict[str, Dict[str, float]] = field(default_factory=lambda: {
        "trending": {"momentum": 1.0, "trend": 1.2, "volatility": 0.9,
                     "volume": 1.1, "structure": 1.0},
        "consolidating": {"momentum": 1.2, "trend": 0.8, "volatility": 1.1,
                          "volume": 1.0, "structure": 1.0},
        "breakout": {"momentum": 1.0, "trend": 0.9, "volatility": 1.3,
                     "volume": 1.2, "structure": 0.9},
    })
    dead_zone: float = 0.05  # |raw| <= dead_zone -> NEUTRAL
    moderate_threshold: float = 0.2
    strong_threshold: float = 0.5

    def __post_init__(self):
        _raise_if("confluence", self.errors())

    def errors(self) -> List[str]:
        errors = []
        unknown = set(self.weights) - set(CATEGORIES)
        if unknown:
            errors.append(f"confluence.weights: неизвестные категории {sorted(unknown)}")
        if any(w < 0 for w in self.weights.values()):
            errors.append("confluence.weights: веса должны быть >= 0")
        if abs(sum(self.weights.values()) - 1.0) > 1e-9:
            errors.append(f"confluence.weights: сумма весов {sum(self.weights.values()):.4f} != 1")

        regimes = {r.value for r in Regime}
        for regime, multipliers in self.regime_multipliers.items():
            if regime not in regimes:
                errors.append(f"confluence.regime_multipliers: неизвестный режим {regime!r}")
            unknown = set(multipliers) - set(CATEGORIES)
            if unknown:
                errors.append(f"confluence.regime_multipliers[{regime}]: "
                              f"неизвестные категории {sorted(unknown)}")
            if any(m <= 0 for m in multipliers.values()):
                errors.append(f"confluence.regime_multipliers[{regime}]: множители должны быть > 0")

        if not 0 <= self.dead_zone < self.moderate_threshold < self.strong_threshold <= 1:
            errors.append("confluence: требуется 0 <= dead_zone < moderate < strong <= 1")
        return errors


@dataclass
class AggregatorSettings:
    """Мульти-таймфрейм агрегация."""
    timeframes: List[str] = field(default_factory=lambda: ["15m", "1h", "4h", "1d"])
    max_degraded_fraction: float = 0.5
    stop_atr_multiplier: float = 2.0
    risk_reward: float = 2.0
    max_stop_pct: float = MAX_STOP_PCT  # не больше 15% против позиции
    max_target_pct: float = MAX_TARGET_PCT  # не больше 30% в сторону позиции
    max_workers: int = 4

    def __post_init__(self):
        _raise_if("aggregator", self.errors())

    def errors(self) -> List[str]:
        errors = []
        for tf in self.timeframes:
            try:
                Timeframe.parse(tf)
            except InvalidParameterError as e:
                errors.append(str(e))
        if not self.timeframes:
            errors.append("aggregator.timeframes пуст")
        if not 0 <= self.max_degraded_fraction <= 1:
            errors.append("aggregator.max_degraded_fraction должен быть в [0, 1]")
        if self.stop_atr_multiplier <= 0 or self.risk_reward <= 0:
            errors.append("aggregator: множители стопа/тейка должны быть > 0")
        if not 0 < self.max_stop_pct <= MAX_STOP_PCT:
            errors.append(f"aggregator.max_stop_pct должен быть в (0, {MAX_STOP_PCT}]")
        if not 0 < self.max_target_pct <= MAX_TARGET_PCT:
            errors.append(f"aggregator.max_target_pct должен быть в (0, {MAX_TARGET_PCT}]")
        if self.max_workers <= 0:
            errors.append("aggregator.max_workers должен быть > 0")
        return errors


@dataclass
class MonteCarloSettings:
    """Monte Carlo симуляция."""
    path_count: int = 10000
    horizon_steps: int = 24
    drift_scale: float = 0.001

    def __post_init__(self):
        _raise_if("monte_carlo", self.errors())

    def errors(self) -> List[str]:
        errors = []
        if self.path_count <= 0:
            errors.append("monte_carlo.path_count должен быть > 0")
        if self.horizon_steps <= 0:
            errors.append("monte_carlo.horizon_steps должен быть > 0")
        if self.drift_scale < 0:
            errors.append("monte_carlo.drift_scale должен быть >= 0")
        return errors


@dataclass
class FeedbackSettings:
    """Обратная связь по точности."""
    neutral_win_rate: float = 0.5
    sensitivity: float = 0.4
    min_multiplier: float = MIN_FEEDBACK_MULTIPLIER
    max_multiplier: float = MAX_FEEDBACK_MULTIPLIER
    min_samples: int = 5
    recent_window: int = 20
    breakeven_tolerance: float = 0.001
    profit_factor_cap: float = 999.0
    hold_bars: int = 5  # таймаут = hold_bars x длительность таймфрейма
    history_size: int = 1000  # закрытых записей на корзину для get_record

    def __post_init__(self):
        _raise_if("feedback", self.errors())

    def errors(self) -> List[str]:
        errors = []
        if not (MIN_FEEDBACK_MULTIPLIER <= self.min_multiplier <= 1.0
                <= self.max_multiplier <= MAX_FEEDBACK_MULTIPLIER):
            errors.append(f"feedback: требуется {MIN_FEEDBACK_MULTIPLIER} <= min_multiplier "
                          f"<= 1 <= max_multiplier <= {MAX_FEEDBACK_MULTIPLIER}")
        if not 0 <= self.neutral_win_rate <= 1:
            errors.append("feedback.neutral_win_rate должен быть в [0, 1]")
        if self.sensitivity < 0 or self.breakeven_tolerance < 0:
            errors.append("feedback: sensitivity и breakeven_tolerance должны быть >= 0")
        if (self.min_samples <= 0 or self.recent_window <= 0 or self.hold_bars <= 0
                or self.history_size <= 0):
            errors.append("feedback: окна и счетчики должны быть > 0")
        if self.profit_factor_cap <= 0:
            errors.append("feedback.profit_factor_cap должен быть > 0")
        return errors


@dataclass
class Settings:
    """
    Главный класс настроек.
    Объединяет все конфигурации.
    """

    # Основные настройки
    project_name: str = "MTF Signal Engine"
    version: str = "1.0.0"
    environment: str = "development"  # development, testing, production
    log_level: LogLevel = LogLevel.INFO

    # Пути
    project_root: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    data_dir: str = os.path.join(project_root, "data")

    # Компоненты
    default_symbols: List[str] = field(default_factory=lambda: ["BTC/USDT", "ETH/USDT"])
    indicators: IndicatorSettings = field(default_factory=IndicatorSettings)
    structure: StructureSettings = field(default_factory=StructureSettings)
    confluence: ConfluenceSettings = field(default_factory=ConfluenceSettings)
    aggregator: AggregatorSettings = field(default_factory=AggregatorSettings)
    monte_carlo: MonteCarloSettings = field(default_factory=MonteCarloSettings)
    feedback: FeedbackSettings = field(default_factory=FeedbackSettings)

    def __post_init__(self):
        """Инициализация после создания объекта."""
        self._load_from_env()
        self._validate()

    def _load_from_env(self):
        """Загружает настройки из переменных окружения."""
        self.environment = os.getenv("ENVIRONMENT", self.environment)
        self.data_dir = os.getenv("DATA_DIR", self.data_dir)

        log_level_str = os.getenv("LOG_LEVEL", self.log_level.value)
        try:
            self.log_level = LogLevel(log_level_str.upper())
        except ValueError:
            raise InvalidParameterError(f"Неизвестный LOG_LEVEL: {log_level_str}") from None

        try:
            self.monte_carlo.path_count = int(
                os.getenv("MC_PATH_COUNT", self.monte_carlo.path_count))
            self.monte_carlo.horizon_steps = int(
                os.getenv("MC_HORIZON_STEPS", self.monte_carlo.horizon_steps))
            self.aggregator.max_degraded_fraction = float(
                os.getenv("MAX_DEGRADED_FRACTION", self.aggregator.max_degraded_fraction))
        except ValueError as e:
            raise InvalidParameterError(f"Некорректная переменная окружения: {e}") from None

    def _validate(self):
        """Повторная валидация всех секций после переопределений из окружения."""
        errors = []
        for section in (self.indicators, self.structure, self.confluence,
                        self.aggregator, self.monte_carlo, self.feedback):
            errors.extend(section.errors())
        if not self.default_symbols:
            errors.append("default_symbols пуст")

        if errors:
            error_msg = "\n".join([f"  • {error}" for error in errors])
            raise InvalidParameterError(f"Ошибки конфигурации:\n{error_msg}")

    def get_timeframes(self) -> List[Timeframe]:
        """Возвращает таймфреймы агрегации."""
        return [Timeframe.parse(tf) for tf in self.aggregator.timeframes]

    def to_dict(self) -> Dict[str, Any]:
        """Конвертирует настройки в словарь."""
        data = asdict(self)
        data['log_level'] = self.log_level.value
        return data

    def save(self, filepath: str):
        """Сохраняет текущие настройки в файл."""
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

        logger.info(f"⚙️  Настройки сохранены: {filepath}")

    def print_summary(self):
        """Выводит сводку настроек."""
        print("\n" + "="*60)
        print(f"⚙️  КОНФИГУРАЦИЯ: {self.project_name} v{self.version}")
        print("="*60)

        print(f"\n📋 ОСНОВНЫЕ:")
        print(f"   Окружение: {self.environment}")
        print(f"   Логирование: {self.log_level.value}")

        print(f"\n📊 АГРЕГАЦИЯ:")
        print(f"   Таймфреймы: {', '.join(self.aggregator.timeframes)}")
        print(f"   Допустимая доля деградации: {self.aggregator.max_degraded_fraction:.0%}")
        weights = ", ".join(f"{k}={v:.2f}" for k, v in self.confluence.weights.items())
        print(f"   Веса категорий: {weights}")

        print(f"\n🎲 MONTE CARLO:")
        print(f"   Путей: {self.monte_carlo.path_count}, горизонт: {self.monte_carlo.horizon_steps}")

        print(f"\n📁 ПУТИ:")
        print(f"   Данные: {self.data_dir}")

        print("="*60)

# Глобальный экземпляр настроек
settings = Settings()

def get_settings() -> Settings:
    """Возвращает глобальный экземпляр настроек."""
    return settings
