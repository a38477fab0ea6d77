import pytest

from config.settings import AggregatorSettings
from engine.errors import InsufficientConfluenceError
from engine.models import ConfluenceScore, Direction, StrengthLabel, Timeframe
from engine.signals import MultiTimeframeAggregator, round_half_up, timeframe_confidence

T0 = 1_700_000_000_000


def _score(tf, raw, close=100.0, atr=1.0, ts=T0, degraded=False, direction=None):
    if direction is None:
        direction = Direction.LONG if raw > 0.05 else Direction.SHORT if raw < -0.05 else Direction.NEUTRAL
    return ConfluenceScore(
        timeframe=tf,
        raw_score=raw,
        direction=direction,
        strength=StrengthLabel.STRONG,
        degraded=degraded,
        close=close,
        atr=atr,
        last_timestamp=ts,
    )


class _Feedback:
    def __init__(self, multiplier):
        self.multiplier = multiplier

    def confidence_multiplier(self, symbol, timeframe):
        return self.multiplier


def test_confidence_examples():
    assert timeframe_confidence(1.0, Timeframe.M1) == 70
    assert timeframe_confidence(0.9, Timeframe.M5) == 79
    assert timeframe_confidence(1.0, Timeframe.H4, 1.1) == 95
    assert timeframe_confidence(0.0, Timeframe.H4) == 0


def test_round_half_up():
    assert round_half_up(79.5) == 80
    assert round_half_up(78.5) == 79
    assert round_half_up(79.49) == 79


def test_single_timeframe_signal():
    result = MultiTimeframeAggregator().aggregate("BTC/USDT", [_score(Timeframe.M1, 1.0)])
    signal = result.consolidated
    assert signal.confidence == 70
    assert signal.direction is Direction.LONG
    assert signal.entry_price == 100.0
    assert signal.stop_loss == pytest.approx(98.0)
    assert signal.take_profit == pytest.approx(104.0)
    assert signal.volatility == pytest.approx(0.01)
    assert not signal.bound_limited
    assert not signal.degraded
    assert len(result.per_timeframe) == 1


def test_weighted_vote_majority():
    scores = [
        _score(Timeframe.M1, 0.5),
        _score(Timeframe.M5, 0.5),
        _score(Timeframe.H4, -0.5),
    ]
    signal = MultiTimeframeAggregator().aggregate("BTC/USDT", scores).consolidated
    assert signal.direction is Direction.LONG
    # 0.70 * 35 + 0.88 * 44 из суммарного веса 2.58
    assert signal.confidence == round_half_up((0.70 * 35 + 0.88 * 44) / 2.58)


def test_tie_goes_to_higher_timeframe():
    scores = [_score(Timeframe.M15, 0.6), _score(Timeframe.D3, -0.6)]
    signal = MultiTimeframeAggregator().aggregate("BTC/USDT", scores).consolidated
    assert signal.direction is Direction.SHORT
    assert signal.primary_timeframe is Timeframe.D3


def test_bounds_clamp_long_and_short():
    agg = MultiTimeframeAggregator()
    long_signal = agg.aggregate("X", [_score(Timeframe.H1, 0.8, atr=20.0)]).consolidated
    assert long_signal.bound_limited
    assert long_signal.stop_loss == pytest.approx(85.0)
    assert long_signal.take_profit == pytest.approx(130.0)

    short_signal = agg.aggregate("X", [_score(Timeframe.H1, -0.8, atr=20.0)]).consolidated
    assert short_signal.bound_limited
    assert short_signal.stop_loss == pytest.approx(115.0)
    assert short_signal.take_profit == pytest.approx(70.0)

    for signal in (long_signal, short_signal):
        entry = signal.entry_price
        assert abs(signal.stop_loss - entry) / entry <= 0.15
        assert abs(signal.take_profit - entry) / entry <= 0.30


def test_loosened_config_cannot_widen_bounds():
    config = AggregatorSettings()
    # обход валидации: секцию мутируют после создания
    config.max_stop_pct = 0.5
    config.max_target_pct = 0.6
    signal = MultiTimeframeAggregator(config).aggregate(
        "X", [_score(Timeframe.H1, 0.8, atr=30.0)]).consolidated
    assert signal.bound_limited
    assert signal.stop_loss == pytest.approx(85.0)
    assert signal.take_profit == pytest.approx(130.0)

    tighter = AggregatorSettings(max_stop_pct=0.05, max_target_pct=0.10)
    signal = MultiTimeframeAggregator(tighter).aggregate(
        "X", [_score(Timeframe.H1, 0.8, atr=30.0)]).consolidated
    assert signal.stop_loss == pytest.approx(95.0)
    assert signal.take_profit == pytest.approx(110.0)


def test_bounds_hold_for_awkward_prices():
    agg = MultiTimeframeAggregator()
    for close in (0.0317, 1.1, 3.3, 29_999.99, 61_234.5678):
        signal = agg.aggregate("X", [_score(Timeframe.H1, 0.9, close=close, atr=close)]).consolidated
        assert abs(signal.stop_loss - close) / close <= 0.15
        assert abs(signal.take_profit - close) / close <= 0.30


def test_degraded_fraction_threshold():
    scores = [
        _score(Timeframe.H1, 0.5, degraded=True),
        _score(Timeframe.H4, 0.5, degraded=True),
        _score(Timeframe.D1, 0.5),
    ]
    with pytest.raises(InsufficientConfluenceError) as exc:
        MultiTimeframeAggregator().aggregate("BTC/USDT", scores)
    assert exc.value.degraded == 2
    assert exc.value.total == 3

    scores[1] = _score(Timeframe.H4, 0.5)
    signal = MultiTimeframeAggregator().aggregate("BTC/USDT", scores).consolidated
    assert signal.degraded


def test_threshold_is_configurable():
    scores = [_score(Timeframe.H1, 0.5, degraded=True), _score(Timeframe.H4, 0.5)]
    MultiTimeframeAggregator().aggregate("X", scores)
    with pytest.raises(InsufficientConfluenceError):
        MultiTimeframeAggregator(AggregatorSettings(max_degraded_fraction=0.25)).aggregate("X", scores)


def test_feedback_multiplier_is_applied():
    scores = [_score(Timeframe.H1, 0.5)]
    plain = MultiTimeframeAggregator().aggregate("X", scores).consolidated
    boosted = MultiTimeframeAggregator(feedback=_Feedback(1.1)).aggregate("X", scores).consolidated
    dampened = MultiTimeframeAggregator(feedback=_Feedback(0.9)).aggregate("X", scores).consolidated
    assert plain.confidence == 49
    assert boosted.confidence == 54
    assert dampened.confidence == 44


def test_neutral_signal_has_flat_levels():
    signal = MultiTimeframeAggregator().aggregate("X", [_score(Timeframe.H1, 0.01)]).consolidated
    assert signal.direction is Direction.NEUTRAL
    assert signal.stop_loss == signal.take_profit == signal.entry_price


def test_no_atr_on_agreeing_side_fails():
    scores = [_score(Timeframe.H1, 0.5, atr=None), _score(Timeframe.M5, -0.5)]
    with pytest.raises(InsufficientConfluenceError):
        MultiTimeframeAggregator().aggregate("X", scores)


def test_entry_is_latest_close_finest_on_tie():
    hour = 3_600_000
    scores = [
        _score(Timeframe.H1, 0.5, close=101.0, ts=T0),
        # 4h свеча закрывается одновременно с часовой
        _score(Timeframe.H4, 0.5, close=100.5, ts=T0 - 3 * hour),
        _score(Timeframe.D1, 0.5, close=99.0, ts=T0 - 30 * hour),
    ]
    signal = MultiTimeframeAggregator().aggregate("X", scores).consolidated
    assert signal.entry_price == 101.0
    assert signal.primary_timeframe is Timeframe.H4
    assert signal.timeframes == (Timeframe.H1, Timeframe.H4, Timeframe.D1)


def test_empty_input_fails():
    with pytest.raises(InsufficientConfluenceError):
        MultiTimeframeAggregator().aggregate("X", [])
