# engine/errors.py

from typing import Optional


class SignalEngineError(Exception):
    """Базовая ошибка ядра генерации сигналов."""


class InsufficientDataError(SignalEngineError):
    """
    Свечей меньше, чем требует индикатор.
    Локальна для индикатора: на уровне конфлюэнса превращается в флаг degraded.
    """

    def __init__(self, indicator: str, required: int, available: int,
                 reason: Optional[str] = None):
        self.indicator = indicator
        self.required = required
        self.available = available
        message = reason or f"{indicator}: требуется {required} свечей, доступно {available}"
        super().__init__(message)


class InsufficientConfluenceError(SignalEngineError):
    """Слишком много деградированных таймфреймов — сигнал не выпускается."""

    def __init__(self, message: str, degraded: int = 0, total: int = 0):
        self.degraded = degraded
        self.total = total
        super().__init__(message)


class InvalidParameterError(SignalEngineError, ValueError):
    """Некорректная конфигурация: неположительный период, неизвестный таймфрейм и т.п."""


class InvalidSignalError(SignalEngineError, ValueError):
    """Вход Monte Carlo структурно противоречив."""


class InvalidCandleError(SignalEngineError, ValueError):
    """Последовательность свечей нарушает входной контракт."""


class UnknownPredictionError(SignalEngineError, KeyError):
    """Прогноз с таким идентификатором не отслеживается."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class RecordClosedError(SignalEngineError):
    """Запись уже в терминальном состоянии и не может быть закрыта повторно."""
