# diag/diag_scoring_weights.py

from config.settings import CATEGORIES, ConfluenceSettings
from context.scoring.scorer import WEIGHTS, compute_confluence_score, regime_weights

def run():
    print("\nSCORING WEIGHTS DIAGNOSTIC\n")

    # 1. веса существуют
    assert set(CATEGORIES) == set(WEIGHTS), "Missing scoring weights"

    # 2. сумма весов
    total = sum(WEIGHTS.values())
    assert abs(total - 1.0) < 1e-6, f"Weights sum != 1.0 ({total})"
    print("OK   | weights sum = 1.0")

    # 3. score в диапазоне
    for value in (-1.0, -0.3, 0.0, 0.4, 1.0):
        score = compute_confluence_score(
            categories={name: [value] for name in CATEGORIES},
        )
        assert -1.0 <= score.score <= 1.0, "Score out of bounds"
        assert abs(score.score - value) < 1e-9, "Uniform input must give the same score"
    print("OK   | score bounded [-1,1]")

    # 4. пропавшая категория не перенормируется
    score = compute_confluence_score(
        categories={name: [1.0] for name in CATEGORIES if name != "volume"},
    )
    assert score.missing == ("volume",)
    assert abs(score.score - (1.0 - WEIGHTS["volume"])) < 1e-9
    print("OK   | missing category contributes zero weight")

    # 5. нет доминирующего фактора
    for k, w in WEIGHTS.items():
        assert w < 0.8, f"Weight {k} dominates system"

    print("OK   | no dominant factor")

    # 6. поправки режима сохраняют сумму 1 и не создают доминанту
    for regime, multipliers in ConfluenceSettings().regime_multipliers.items():
        adjusted = regime_weights(WEIGHTS, multipliers)
        assert abs(sum(adjusted.values()) - 1.0) < 1e-9, f"{regime}: weights sum != 1.0"
        assert max(adjusted.values()) < 0.8, f"{regime}: dominant factor"
    print("OK   | regime weights renormalised")
    print("\nSCORING DIAGNOSTIC PASSED")

if __name__ == "__main__":
    run()
