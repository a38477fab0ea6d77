#!/usr/bin/env python3
"""
Модели данных ядра сигналов.
Свечи, таймфреймы, сигналы, оценки риска, записи точности и статистика.
Все структуры — простые сериализуемые записи (to_dict / from_dict).
"""
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from engine.errors import InvalidParameterError

# ============================================================================
# ПЕРЕЧИСЛЕНИЯ
# ============================================================================

class Timeframe(str, Enum):
    """Фиксированный набор таймфреймов."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    D3 = "3d"
    W1 = "1w"
    MN1 = "1M"

    @classmethod
    def parse(cls, key: Any) -> "Timeframe":
        """Преобразует строку в таймфрейм или бросает InvalidParameterError."""
        if isinstance(key, Timeframe):
            return key
        try:
            return cls(key)
        except ValueError:
            raise InvalidParameterError(f"Неизвестный таймфрейм: {key!r}") from None

    @property
    def weight(self) -> float:
        return RELIABILITY_WEIGHTS[self]

    @property
    def minutes(self) -> int:
        return TIMEFRAME_MINUTES[self]

    @property
    def rank(self) -> int:
        """Порядковый номер: чем старше таймфрейм, тем больше."""
        return _TIMEFRAME_ORDER.index(self)


# Веса надежности таймфреймов (неизменяемые)
RELIABILITY_WEIGHTS: Dict[Timeframe, float] = {
    Timeframe.M1: 0.70,
    Timeframe.M5: 0.88,
    Timeframe.M15: 0.92,
    Timeframe.M30: 0.95,
    Timeframe.H1: 0.98,
    Timeframe.H4: 1.00,
    Timeframe.D1: 0.95,
    Timeframe.D3: 0.92,
    Timeframe.W1: 0.90,
    Timeframe.MN1: 0.85,
}

TIMEFRAME_MINUTES: Dict[Timeframe, int] = {
    Timeframe.M1: 1,
    Timeframe.M5: 5,
    Timeframe.M15: 15,
    Timeframe.M30: 30,
    Timeframe.H1: 60,
    Timeframe.H4: 240,
    Timeframe.D1: 1440,
    Timeframe.D3: 4320,
    Timeframe.W1: 10080,
    Timeframe.MN1: 43200,
}

_TIMEFRAME_ORDER = list(Timeframe)

# Жесткие пределы уровней сигнала относительно цены входа
MAX_STOP_PCT = 0.15
MAX_TARGET_PCT = 0.30


class Direction(str, Enum):
    """Направление сигнала."""
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"

    @property
    def sign(self) -> int:
        if self is Direction.LONG:
            return 1
        if self is Direction.SHORT:
            return -1
        return 0


class StrengthLabel(str, Enum):
    """Сила конфлюэнса по |rawScore|."""
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"


class Regime(str, Enum):
    """Рыночный режим."""
    TRENDING = "trending"
    CONSOLIDATING = "consolidating"
    BREAKOUT = "breakout"


class Outcome(str, Enum):
    """Состояние записи точности."""
    OPEN = "Open"
    WIN = "Win"
    LOSS = "Loss"
    BREAKEVEN = "Breakeven"

    @property
    def is_terminal(self) -> bool:
        return self is not Outcome.OPEN


class RiskLevel(str, Enum):
    """Уровень риска по riskScore."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    EXTREME = "Extreme"


# ============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ
# ============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Наивное время считается UTC; aware приводится к UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def to_json(record: Any) -> str:
    """Сериализует запись в JSON (wire format)."""
    return json.dumps(record.to_dict(), ensure_ascii=False)


def from_json(cls: Any, text: str) -> Any:
    """Восстанавливает запись класса cls из JSON."""
    return cls.from_dict(json.loads(text))

# ============================================================================
# СВЕЧИ
# ============================================================================

@dataclass(frozen=True)
class Candle:
    """OHLCV свеча; timestamp — миллисекунды UTC (открытие свечи)."""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candle":
        return cls(
            timestamp=int(data['timestamp']),
            open=float(data['open']),
            high=float(data['high']),
            low=float(data['low']),
            close=float(data['close']),
            volume=float(data['volume']),
        )

# ============================================================================
# СТРУКТУРА
# ============================================================================

@dataclass(frozen=True)
class Zone:
    """Зона спроса/предложения: ценовой диапазон, а не одна цена."""
    kind: str  # 'supply' или 'demand'
    low: float
    high: float
    touches: int  # количество свингов в кластере
    last_index: int  # индекс последнего свинга

    @property
    def mid(self) -> float:
        return (self.low + self.high) / 2

    def distance(self, price: float) -> float:
        """Расстояние от цены до зоны (0, если цена внутри)."""
        if price < self.low:
            return self.low - price
        if price > self.high:
            return price - self.high
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'low': self.low,
            'high': self.high,
            'touches': self.touches,
            'last_index': self.last_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Zone":
        return cls(
            kind=data['kind'],
            low=data['low'],
            high=data['high'],
            touches=int(data['touches']),
            last_index=int(data['last_index']),
        )


@dataclass(frozen=True)
class PsychLevel:
    """Психологический уровень; sources показывает, что сошлось на этой цене."""
    price: float
    sources: Tuple[str, ...]

    @property
    def is_confluence(self) -> bool:
        return len(self.sources) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {'price': self.price, 'sources': list(self.sources)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PsychLevel":
        return cls(price=data['price'], sources=tuple(data['sources']))

# ============================================================================
# КОНФЛЮЭНС
# ============================================================================

@dataclass(frozen=True)
class ConfluenceScore:
    """
    Оценка конфлюэнса одного таймфрейма.

    raw_score — взвешенная сумма средних по категориям, в [-1, 1].
    close/atr/last_timestamp нужны агрегатору для цены входа и стопов;
    они равны None только вместе с degraded=True.
    regime, зоны и уровни берутся из анализа структуры (None и пустые
    кортежи, если структура не посчитана); weights: веса категорий
    после поправки на режим.
    """
    timeframe: Timeframe
    raw_score: float
    direction: Direction
    strength: StrengthLabel
    categories: Dict[str, float] = field(default_factory=dict)
    contributions: Dict[str, float] = field(default_factory=dict)
    missing: Tuple[str, ...] = ()
    degraded: bool = False
    gaps: int = 0
    close: Optional[float] = None
    atr: Optional[float] = None
    last_timestamp: Optional[int] = None
    regime: Optional[Regime] = None
    weights: Dict[str, float] = field(default_factory=dict)
    supply_zones: Tuple[Zone, ...] = ()
    demand_zones: Tuple[Zone, ...] = ()
    levels: Tuple[PsychLevel, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timeframe': self.timeframe.value,
            'raw_score': self.raw_score,
            'direction': self.direction.value,
            'strength': self.strength.value,
            'categories': dict(self.categories),
            'contributions': dict(self.contributions),
            'missing': list(self.missing),
            'degraded': self.degraded,
            'gaps': self.gaps,
            'close': self.close,
            'atr': self.atr,
            'last_timestamp': self.last_timestamp,
            'regime': self.regime.value if self.regime else None,
            'weights': dict(self.weights),
            'supply_zones': [z.to_dict() for z in self.supply_zones],
            'demand_zones': [z.to_dict() for z in self.demand_zones],
            'levels': [lvl.to_dict() for lvl in self.levels],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfluenceScore":
        return cls(
            timeframe=Timeframe.parse(data['timeframe']),
            raw_score=data['raw_score'],
            direction=Direction(data['direction']),
            strength=StrengthLabel(data['strength']),
            categories=dict(data['categories']),
            contributions=dict(data['contributions']),
            missing=tuple(data['missing']),
            degraded=data['degraded'],
            gaps=data['gaps'],
            close=data['close'],
            atr=data['atr'],
            last_timestamp=data['last_timestamp'],
            regime=Regime(data['regime']) if data.get('regime') else None,
            weights=dict(data.get('weights', {})),
            supply_zones=tuple(Zone.from_dict(z) for z in data.get('supply_zones', ())),
            demand_zones=tuple(Zone.from_dict(z) for z in data.get('demand_zones', ())),
            levels=tuple(PsychLevel.from_dict(lvl) for lvl in data.get('levels', ())),
        )

# ============================================================================
# СИГНАЛ
# ============================================================================

@dataclass(frozen=True)
class Signal:
    """
    Консолидированный (или потаймфреймовый) торговый сигнал.
    Неизменяем после выпуска.
    """
    signal_id: str
    symbol: str
    timeframes: Tuple[Timeframe, ...]
    primary_timeframe: Timeframe
    direction: Direction
    confidence: int
    entry_price: float
    stop_loss: float
    take_profit: float
    volatility: float
    generated_at: datetime
    confluence_snapshot: Tuple[ConfluenceScore, ...] = ()
    degraded: bool = False
    bound_limited: bool = False

    @property
    def risk_reward_ratio(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        if risk == 0:
            return 0.0
        return abs(self.take_profit - self.entry_price) / risk

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'timeframes': [tf.value for tf in self.timeframes],
            'primary_timeframe': self.primary_timeframe.value,
            'direction': self.direction.value,
            'confidence': self.confidence,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'volatility': self.volatility,
            'generated_at': _iso(self.generated_at),
            'confluence_snapshot': [c.to_dict() for c in self.confluence_snapshot],
            'degraded': self.degraded,
            'bound_limited': self.bound_limited,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        return cls(
            signal_id=data['signal_id'],
            symbol=data['symbol'],
            timeframes=tuple(Timeframe.parse(tf) for tf in data['timeframes']),
            primary_timeframe=Timeframe.parse(data['primary_timeframe']),
            direction=Direction(data['direction']),
            confidence=int(data['confidence']),
            entry_price=data['entry_price'],
            stop_loss=data['stop_loss'],
            take_profit=data['take_profit'],
            volatility=data['volatility'],
            generated_at=_from_iso(data['generated_at']),
            confluence_snapshot=tuple(
                ConfluenceScore.from_dict(c) for c in data['confluence_snapshot']
            ),
            degraded=data['degraded'],
            bound_limited=data['bound_limited'],
        )


@dataclass(frozen=True)
class AggregatedSignal:
    """Консолидированный сигнал плюс сигналы по отдельным таймфреймам."""
    consolidated: Signal
    per_timeframe: Tuple[Signal, ...] = ()

# ============================================================================
# РИСК
# ============================================================================

@dataclass(frozen=True)
class RiskAssessment:
    """Результат Monte Carlo симуляции для одного сигнала (доходности — доли)."""
    signal_id: str
    expected_return: float
    var95: float
    max_drawdown: float
    win_probability: float
    sharpe_ratio: float
    risk_score: float
    risk_level: RiskLevel
    confidence_interval: Tuple[float, float]
    seed: int
    path_count: int
    horizon_steps: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signal_id': self.signal_id,
            'expected_return': self.expected_return,
            'var95': self.var95,
            'max_drawdown': self.max_drawdown,
            'win_probability': self.win_probability,
            'sharpe_ratio': self.sharpe_ratio,
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value,
            'confidence_interval': list(self.confidence_interval),
            'seed': self.seed,
            'path_count': self.path_count,
            'horizon_steps': self.horizon_steps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskAssessment":
        low, high = data['confidence_interval']
        return cls(
            signal_id=data['signal_id'],
            expected_return=data['expected_return'],
            var95=data['var95'],
            max_drawdown=data['max_drawdown'],
            win_probability=data['win_probability'],
            sharpe_ratio=data['sharpe_ratio'],
            risk_score=data['risk_score'],
            risk_level=RiskLevel(data['risk_level']),
            confidence_interval=(low, high),
            seed=int(data['seed']),
            path_count=int(data['path_count']),
            horizon_steps=int(data['horizon_steps']),
        )

# ============================================================================
# ТОЧНОСТЬ
# ============================================================================

@dataclass(frozen=True)
class AccuracyRecord:
    """Отслеживаемый прогноз: Open -> {Win, Loss, Breakeven}."""
    prediction_id: str
    symbol: str
    timeframe: Timeframe
    direction: Direction
    entry_price: float
    stop_loss: float
    take_profit: float
    opened_at: datetime
    timeout_at: datetime
    outcome: Outcome = Outcome.OPEN
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    realized_return: float = 0.0

    def close(self, outcome: Outcome, exit_price: float, closed_at: datetime,
              realized_return: float) -> "AccuracyRecord":
        return replace(
            self,
            outcome=outcome,
            exit_price=exit_price,
            closed_at=closed_at,
            realized_return=realized_return,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'prediction_id': self.prediction_id,
            'symbol': self.symbol,
            'timeframe': self.timeframe.value,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'opened_at': _iso(self.opened_at),
            'timeout_at': _iso(self.timeout_at),
            'outcome': self.outcome.value,
            'closed_at': _iso(self.closed_at),
            'exit_price': self.exit_price,
            'realized_return': self.realized_return,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccuracyRecord":
        return cls(
            prediction_id=data['prediction_id'],
            symbol=data['symbol'],
            timeframe=Timeframe.parse(data['timeframe']),
            direction=Direction(data['direction']),
            entry_price=data['entry_price'],
            stop_loss=data['stop_loss'],
            take_profit=data['take_profit'],
            opened_at=_from_iso(data['opened_at']),
            timeout_at=_from_iso(data['timeout_at']),
            outcome=Outcome(data['outcome']),
            closed_at=_from_iso(data['closed_at']),
            exit_price=data['exit_price'],
            realized_return=data['realized_return'],
        )


@dataclass(frozen=True)
class PerformanceStats:
    """Агрегированная статистика по корзине (symbol, timeframe)."""
    symbol: str
    timeframe: Timeframe
    win_rate: float = 0.0
    profit_factor: float = 0.0
    avg_return: float = 0.0
    sample_size: int = 0
    wins: int = 0
    losses: int = 0
    breakevens: int = 0
    max_drawdown: float = 0.0
    multiplier: float = 1.0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe.value,
            'win_rate': self.win_rate,
            'profit_factor': self.profit_factor,
            'avg_return': self.avg_return,
            'sample_size': self.sample_size,
            'wins': self.wins,
            'losses': self.losses,
            'breakevens': self.breakevens,
            'max_drawdown': self.max_drawdown,
            'multiplier': self.multiplier,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceStats":
        return cls(
            symbol=data['symbol'],
            timeframe=Timeframe.parse(data['timeframe']),
            win_rate=data['win_rate'],
            profit_factor=data['profit_factor'],
            avg_return=data['avg_return'],
            sample_size=int(data['sample_size']),
            wins=int(data['wins']),
            losses=int(data['losses']),
            breakevens=int(data['breakevens']),
            max_drawdown=data['max_drawdown'],
            multiplier=data['multiplier'],
            version=int(data['version']),
        )
