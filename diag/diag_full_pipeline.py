# diag/diag_full_pipeline.py

import numpy as np

from data_handler import InMemoryCandleProvider
from engine.models import Candle, Timeframe
from engine_runner import EngineRunner

START_MS = 1_700_000_000_000


def make_candles(n, timeframe, drift=0.0, volatility=0.01, seed=7, start=100.0):
    """Детерминированное случайное блуждание OHLCV."""
    rng = np.random.default_rng(seed)
    step = Timeframe.parse(timeframe).minutes * 60_000
    candles = []
    close = start
    for i in range(n):
        open_ = close
        close = open_ * float(np.exp(drift + volatility * rng.standard_normal()))
        high = max(open_, close) * (1 + abs(float(rng.normal(0, volatility / 2))))
        low = min(open_, close) * (1 - abs(float(rng.normal(0, volatility / 2))))
        volume = float(rng.uniform(100, 1000))
        candles.append(Candle(START_MS + i * step, open_, high, low, close, volume))
    return candles


def run():
    scenarios = [
        ("Рост", 0.004),
        ("Падение", -0.004),
        ("Флэт", 0.0),
    ]
    timeframes = ["1h", "4h", "1d"]

    print("=== FULL PIPELINE DIAGNOSTIC ===")

    for name, drift in scenarios:
        provider = InMemoryCandleProvider({
            ("TEST/USDT", tf): make_candles(200, tf, drift=drift, seed=i + 1)
            for i, tf in enumerate(timeframes)
        })
        runner = EngineRunner(provider, timeframes=timeframes)
        signal = runner.generate_signal("TEST/USDT")

        assert 0 <= signal.confidence <= 95
        assert abs(signal.stop_loss - signal.entry_price) / signal.entry_price <= 0.15
        assert abs(signal.take_profit - signal.entry_price) / signal.entry_price <= 0.30

        risk = None
        if signal.direction.sign != 0:
            risk = runner.assess_risk(signal, seed=42)
            assert 0.0 <= risk.win_probability <= 1.0

        print(
            f"{name:<10} | "
            f"direction={signal.direction.value:<7} | "
            f"confidence={signal.confidence:>2} | "
            f"risk={risk.risk_level.value if risk else '-'}"
        )

    print("\nFULL PIPELINE DIAGNOSTIC PASSED")


if __name__ == "__main__":
    run()
