# context/scoring/model.py

from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass(frozen=True)
class ScoreResult:
    score: float          # -1.0 .. 1.0
    components: Dict[str, float]  # среднее по каждой категории
    missing: Tuple[str, ...] = field(default=())  # категории без данных
