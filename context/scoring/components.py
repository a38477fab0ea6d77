# context/scoring/components.py

import math
from typing import Iterable, Optional


def clamp_unit(value: float) -> float:
    """
    Ограничение в [-1, 1]. Нечисловые значения не пропускаем.
    """
    if not math.isfinite(value):
        raise ValueError(f"Вклад должен быть конечным числом: {value}")
    return max(-1.0, min(1.0, value))


def category_average(values: Iterable[float]) -> Optional[float]:
    """
    Среднее вкладов категории.
    None, если в категории не осталось ни одного индикатора.
    """
    values = [clamp_unit(v) for v in values]
    if not values:
        return None
    return sum(values) / len(values)


def base_confidence(raw_score: float) -> float:
    """
    |rawScore| в шкале 0..100.
    """
    return min(100.0, abs(raw_score) * 100.0)
