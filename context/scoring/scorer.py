# context/scoring/scorer.py

from typing import Dict, Iterable, Optional

from context.scoring.model import ScoreResult
from context.scoring.components import category_average

# Веса — часть модели, не стратегии
WEIGHTS = {
    "momentum": 0.25,
    "trend": 0.25,
    "volatility": 0.15,
    "volume": 0.15,
    "structure": 0.20,
}


def compute_confluence_score(
    *,
    categories: Dict[str, Iterable[float]],
    weights: Optional[Dict[str, float]] = None,
) -> ScoreResult:
    weights = weights or WEIGHTS
    components = {}
    missing = []

    for name in weights:
        avg = category_average(categories.get(name, ()))
        if avg is None:
            # категория без данных не перенормируется
            missing.append(name)
            continue
        components[name] = avg

    # взвешенная сумма
    score = 0.0
    for k, v in components.items():
        score += weights.get(k, 0.0) * v

    # жёсткое ограничение
    score = max(-1.0, min(1.0, score))

    return ScoreResult(
        score=score,
        components=components,
        missing=tuple(missing),
    )


def regime_weights(
    weights: Dict[str, float],
    multipliers: Optional[Dict[str, float]] = None,
) -> Dict[str, float]:
    # поправка весов на режим рынка, сумма снова 1
    if not multipliers:
        return dict(weights)
    adjusted = {k: w * multipliers.get(k, 1.0) for k, w in weights.items()}
    total = sum(adjusted.values())
    if total <= 0:
        return dict(weights)
    return {k: w / total for k, w in adjusted.items()}
