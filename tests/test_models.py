from datetime import datetime, timedelta, timezone

import pytest

from engine.errors import InvalidParameterError
from engine.models import (
    ConfluenceScore,
    Direction,
    PerformanceStats,
    PsychLevel,
    Regime,
    RiskAssessment,
    RiskLevel,
    Signal,
    StrengthLabel,
    Timeframe,
    Zone,
    as_utc,
    from_json,
    to_json,
)


def _snapshot():
    return ConfluenceScore(
        timeframe=Timeframe.H4,
        raw_score=0.42,
        direction=Direction.LONG,
        strength=StrengthLabel.MODERATE,
        categories={"momentum": 0.5, "trend": 0.4},
        contributions={"RSI": 0.5, "EMA": 0.4},
        missing=("VWAP",),
        degraded=True,
        gaps=2,
        close=101.5,
        atr=1.2,
        last_timestamp=1_700_000_000_000,
        regime=Regime.BREAKOUT,
        weights={"momentum": 0.25, "trend": 0.225},
        supply_zones=(Zone("supply", 104.0, 105.0, 2, 180),),
        levels=(PsychLevel(100.0, ("round",)),),
    )


def test_timeframe_parse_and_properties():
    assert Timeframe.parse("4h") is Timeframe.H4
    assert Timeframe.parse(Timeframe.D1) is Timeframe.D1
    assert Timeframe.parse("1M") is Timeframe.MN1
    assert Timeframe.parse("1m") is Timeframe.M1
    with pytest.raises(InvalidParameterError):
        Timeframe.parse("2h")

    assert Timeframe.H4.weight == 1.0
    assert Timeframe.M1.weight == 0.70
    assert Timeframe.D1.minutes == 1440
    assert Timeframe.M15.rank < Timeframe.H1.rank < Timeframe.MN1.rank
    assert max(tf.weight for tf in Timeframe) == 1.0


def test_direction_sign():
    assert Direction.LONG.sign == 1
    assert Direction.SHORT.sign == -1
    assert Direction.NEUTRAL.sign == 0


def test_signal_json_roundtrip():
    signal = Signal(
        signal_id="abc",
        symbol="BTC/USDT",
        timeframes=(Timeframe.H1, Timeframe.H4),
        primary_timeframe=Timeframe.H4,
        direction=Direction.LONG,
        confidence=61,
        entry_price=101.5,
        stop_loss=99.1,
        take_profit=106.3,
        volatility=0.0118,
        generated_at=datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc),
        confluence_snapshot=(_snapshot(),),
        degraded=True,
    )
    restored = from_json(Signal, to_json(signal))
    assert restored == signal
    assert restored.risk_reward_ratio == pytest.approx(2.0)


def test_risk_assessment_json_roundtrip():
    risk = RiskAssessment(
        signal_id="abc",
        expected_return=0.004,
        var95=-0.03,
        max_drawdown=0.08,
        win_probability=0.41,
        sharpe_ratio=0.12,
        risk_score=38.5,
        risk_level=RiskLevel.MEDIUM,
        confidence_interval=(0.003, 0.005),
        seed=42,
        path_count=10000,
        horizon_steps=24,
    )
    assert from_json(RiskAssessment, to_json(risk)) == risk


def test_performance_stats_defaults():
    stats = PerformanceStats("ETH/USDT", Timeframe.D1)
    assert stats.multiplier == 1.0
    assert stats.sample_size == 0
    assert PerformanceStats.from_dict(stats.to_dict()) == stats


def test_as_utc():
    assert as_utc(None) is None
    naive = datetime(2024, 1, 1, 12, 0)
    assert as_utc(naive) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    shifted = datetime(2024, 1, 1, 15, 0, tzinfo=timezone(timedelta(hours=3)))
    assert as_utc(shifted).utcoffset() == timedelta(0)
    assert as_utc(shifted).hour == 12
