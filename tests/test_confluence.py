import pytest

from config.settings import ConfluenceSettings
from diag.diag_full_pipeline import make_candles
from engine.confluence import ConfluenceScorer
from engine.indicators import (
    ADXResult,
    ATRResult,
    BollingerResult,
    EMAResult,
    IndicatorKind,
    IndicatorReport,
    MACDResult,
    RSIResult,
    VWAPResult,
)
from engine.models import (
    ConfluenceScore,
    Direction,
    PsychLevel,
    Regime,
    StrengthLabel,
    Timeframe,
    Zone,
)
from engine.structure import StructureAnalysis


def _report(value: float, skip=()) -> IndicatorReport:
    results = {
        IndicatorKind.RSI: RSIResult(14, 50.0, value),
        IndicatorKind.MACD: MACDResult(12, 26, 9, 0.0, 0.0, 0.0, value),
        IndicatorKind.EMA: EMAResult(20, 100.0, 100.0, value),
        IndicatorKind.ADX: ADXResult(14, 20.0, 10.0, 10.0, value),
        IndicatorKind.ATR: ATRResult(14, 2.0, 100.0, value),
        IndicatorKind.BOLLINGER: BollingerResult(20, 2.0, 100.0, 104.0, 96.0, 0.08, value),
        IndicatorKind.VWAP: VWAPResult(0, 100.0, 1.0, 101.0, 99.0, 102.0, 98.0, value),
    }
    failures = {}
    for kind in skip:
        del results[kind]
        failures[kind] = "нет данных"
    return IndicatorReport(results=results, failures=failures)


def _structure(value: float, regime: Regime = Regime.TRENDING,
               zones=(), levels=()) -> StructureAnalysis:
    return StructureAnalysis(
        regime=regime,
        volatility_ratio=1.0,
        adx=30.0,
        trend_slope=0.001,
        trend_r2=0.9,
        supply_zones=tuple(z for z in zones if z.kind == "supply"),
        demand_zones=tuple(z for z in zones if z.kind == "demand"),
        levels=tuple(levels),
        swing_high=110.0,
        swing_low=90.0,
        contribution=value,
    )


def test_full_agreement_is_strong_long():
    score = ConfluenceScorer().combine(Timeframe.H1, _report(1.0), _structure(1.0), close=100.0)
    assert score.raw_score == pytest.approx(1.0)
    assert score.direction is Direction.LONG
    assert score.strength is StrengthLabel.STRONG
    assert not score.degraded
    assert score.atr == 2.0


def test_missing_category_keeps_configured_weights():
    score = ConfluenceScorer().combine(
        Timeframe.H1, _report(1.0, skip=[IndicatorKind.VWAP]), _structure(1.0)
    )
    # trending: вес volume 0.15 x 1.1 после нормировки на 1.05
    assert score.raw_score == pytest.approx(1.0 - 0.15 * 1.1 / 1.05)
    assert score.missing == ("vwap",)
    assert score.degraded
    assert "volume" not in score.categories


def test_missing_structure_flags_degraded():
    score = ConfluenceScorer().combine(Timeframe.H4, _report(-1.0), None)
    assert score.raw_score == pytest.approx(-0.8)
    assert score.direction is Direction.SHORT
    assert "structure" in score.missing
    assert score.degraded


def test_dead_zone_is_neutral():
    score = ConfluenceScorer().combine(Timeframe.H1, _report(0.04), _structure(0.04))
    assert score.direction is Direction.NEUTRAL
    assert score.strength is StrengthLabel.WEAK

    score = ConfluenceScorer().combine(Timeframe.H1, _report(-0.06), _structure(-0.06))
    assert score.direction is Direction.SHORT


def test_strength_thresholds_follow_config():
    scorer = ConfluenceScorer(ConfluenceSettings(moderate_threshold=0.3, strong_threshold=0.6))
    assert scorer.strength_of(0.25) is StrengthLabel.WEAK
    assert scorer.strength_of(-0.3) is StrengthLabel.MODERATE
    assert scorer.strength_of(0.6) is StrengthLabel.STRONG


def test_gaps_mark_degraded():
    score = ConfluenceScorer().combine(Timeframe.H1, _report(0.5), _structure(0.5), gaps=2)
    assert score.missing == ()
    assert score.degraded
    assert score.gaps == 2


def test_score_from_candles_degrades_on_short_history():
    scorer = ConfluenceScorer()
    full = scorer.score(make_candles(200, "1h", seed=2), Timeframe.H1)
    assert not full.degraded
    assert -1.0 <= full.raw_score <= 1.0
    assert full.close == pytest.approx(make_candles(200, "1h", seed=2)[-1].close)

    short = scorer.score(make_candles(30, "1h", seed=2), Timeframe.H1)
    assert short.degraded
    assert "macd" in short.missing
    assert short.atr is not None


def test_score_without_candles():
    score = ConfluenceScorer().score([], Timeframe.D1)
    assert score.degraded
    assert score.close is None
    assert score.raw_score == 0.0
    assert score.direction is Direction.NEUTRAL


def _momentum_only() -> IndicatorReport:
    # +1 только у momentum, остальные категории нейтральны
    report = _report(0.0)
    results = dict(report.results)
    results[IndicatorKind.RSI] = RSIResult(14, 80.0, 1.0)
    results[IndicatorKind.MACD] = MACDResult(12, 26, 9, 1.0, 0.5, 0.5, 1.0)
    return IndicatorReport(results=results)


@pytest.mark.parametrize("regime, expected", [
    (Regime.TRENDING, 0.25 / 1.05),
    (Regime.CONSOLIDATING, 0.30 / 1.015),
    (Regime.BREAKOUT, 0.25 / 1.03),
])
def test_regime_multipliers_shift_category_weights(regime, expected):
    score = ConfluenceScorer().combine(Timeframe.H1, _momentum_only(), _structure(0.0, regime))
    assert score.regime is regime
    assert score.raw_score == pytest.approx(expected)
    assert sum(score.weights.values()) == pytest.approx(1.0)
    assert score.weights["momentum"] == pytest.approx(expected)


def test_regime_multipliers_from_config():
    config = ConfluenceSettings(regime_multipliers={"trending": {"momentum": 3.0}})
    score = ConfluenceScorer(config).combine(Timeframe.H1, _momentum_only(), _structure(0.0))
    assert score.raw_score == pytest.approx(0.75 / 1.5)

    # режим без поправок и отсутствие структуры оставляют базовые веса
    plain = ConfluenceScorer(config).combine(
        Timeframe.H1, _momentum_only(), _structure(0.0, Regime.BREAKOUT))
    assert plain.weights == ConfluenceSettings().weights
    assert ConfluenceScorer().combine(Timeframe.H1, _momentum_only(), None).regime is None


def test_structure_zones_and_levels_reach_score():
    zones = (Zone("supply", 108.0, 110.0, 3, 40), Zone("demand", 90.0, 91.0, 2, 55))
    levels = (PsychLevel(100.0, ("round", "fib_50")),)
    score = ConfluenceScorer().combine(
        Timeframe.H4, _report(0.3), _structure(0.3, Regime.CONSOLIDATING, zones, levels))

    assert score.supply_zones == (zones[0],)
    assert score.demand_zones == (zones[1],)
    assert score.levels == levels

    data = score.to_dict()
    assert data["regime"] == "consolidating"
    assert data["levels"] == [{"price": 100.0, "sources": ["round", "fib_50"]}]

    restored = ConfluenceScore.from_dict(data)
    assert restored.regime is Regime.CONSOLIDATING
    assert restored.supply_zones == (zones[0],)
    assert restored.demand_zones == (zones[1],)
    assert restored.levels[0].is_confluence
    assert restored.weights == pytest.approx(score.weights)
