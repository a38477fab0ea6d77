import json

import pytest

from config.settings import (
    CATEGORIES,
    AggregatorSettings,
    ConfluenceSettings,
    FeedbackSettings,
    IndicatorSettings,
    MonteCarloSettings,
    Settings,
    get_settings,
)
from engine.errors import InvalidParameterError
from engine.models import Timeframe

ENV_KEYS = ("ENVIRONMENT", "DATA_DIR", "LOG_LEVEL", "MC_PATH_COUNT",
            "MC_HORIZON_STEPS", "MAX_DEGRADED_FRACTION")


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    s = Settings()
    assert set(s.confluence.weights) == set(CATEGORIES)
    assert sum(s.confluence.weights.values()) == pytest.approx(1.0)
    assert s.monte_carlo.path_count == 10000
    assert s.aggregator.max_degraded_fraction == 0.5
    assert s.get_timeframes() == [Timeframe.M15, Timeframe.H1, Timeframe.H4, Timeframe.D1]


def test_global_settings_instance():
    assert get_settings() is get_settings()


def test_env_overrides(clean_env):
    clean_env.setenv("MC_PATH_COUNT", "500")
    clean_env.setenv("MAX_DEGRADED_FRACTION", "0.25")
    clean_env.setenv("LOG_LEVEL", "debug")
    clean_env.setenv("ENVIRONMENT", "production")
    s = Settings()
    assert s.monte_carlo.path_count == 500
    assert s.aggregator.max_degraded_fraction == 0.25
    assert s.log_level.value == "DEBUG"
    assert s.environment == "production"


def test_bad_env_values(clean_env):
    clean_env.setenv("LOG_LEVEL", "LOUD")
    with pytest.raises(InvalidParameterError):
        Settings()

    clean_env.delenv("LOG_LEVEL")
    clean_env.setenv("MC_PATH_COUNT", "many")
    with pytest.raises(InvalidParameterError):
        Settings()

    clean_env.setenv("MC_PATH_COUNT", "0")
    with pytest.raises(InvalidParameterError, match="path_count"):
        Settings()


def test_weights_must_sum_to_one(clean_env):
    weights = {"momentum": 0.5, "trend": 0.5, "volatility": 0.5, "volume": 0.0, "structure": 0.0}
    with pytest.raises(InvalidParameterError, match="сумма весов"):
        Settings(confluence=ConfluenceSettings(weights=weights))


def test_unknown_category_and_timeframe(clean_env):
    weights = {"momentum": 0.5, "sentiment": 0.5}
    with pytest.raises(InvalidParameterError, match="sentiment"):
        Settings(confluence=ConfluenceSettings(weights=weights))
    with pytest.raises(InvalidParameterError, match="2h"):
        Settings(aggregator=AggregatorSettings(timeframes=["1h", "2h"]))


def test_all_errors_reported_together(clean_env):
    clean_env.setenv("MAX_DEGRADED_FRACTION", "1.5")
    clean_env.setenv("MC_HORIZON_STEPS", "0")
    with pytest.raises(InvalidParameterError) as exc:
        Settings()
    message = str(exc.value)
    assert "max_degraded_fraction" in message
    assert "horizon_steps" in message


def test_save_roundtrip(clean_env, tmp_path):
    path = tmp_path / "settings.json"
    Settings().save(str(path))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["log_level"] == "INFO"
    assert data["confluence"]["weights"]["momentum"] == 0.25


def test_sections_validate_on_their_own():
    # секция проверяется и без Settings, при прямой передаче в компонент
    with pytest.raises(InvalidParameterError, match="сумма весов"):
        ConfluenceSettings(weights={"momentum": 2.0})
    with pytest.raises(InvalidParameterError, match="min_multiplier"):
        FeedbackSettings(min_multiplier=0.5, max_multiplier=3)
    with pytest.raises(InvalidParameterError, match="horizon_steps"):
        MonteCarloSettings(horizon_steps=0)
    with pytest.raises(InvalidParameterError, match="macd_fast"):
        IndicatorSettings(macd_fast=30)


def test_feedback_multiplier_bounds():
    FeedbackSettings(min_multiplier=0.95, max_multiplier=1.05)
    with pytest.raises(InvalidParameterError):
        FeedbackSettings(min_multiplier=1.02)
    with pytest.raises(InvalidParameterError):
        FeedbackSettings(history_size=0)


def test_regime_multipliers_validated():
    with pytest.raises(InvalidParameterError, match="sideways"):
        ConfluenceSettings(regime_multipliers={"sideways": {"trend": 1.0}})
    with pytest.raises(InvalidParameterError, match="sentiment"):
        ConfluenceSettings(regime_multipliers={"trending": {"sentiment": 1.0}})
    with pytest.raises(InvalidParameterError, match="> 0"):
        ConfluenceSettings(regime_multipliers={"breakout": {"trend": 0.0}})


def test_stop_and_target_caps_cannot_be_loosened():
    AggregatorSettings(max_stop_pct=0.10, max_target_pct=0.20)
    with pytest.raises(InvalidParameterError) as exc:
        AggregatorSettings(max_target_pct=0.6, max_stop_pct=0.5)
    message = str(exc.value)
    assert "max_stop_pct" in message
    assert "max_target_pct" in message


def test_mutated_section_caught_by_settings(clean_env):
    s = Settings()
    s.aggregator.max_stop_pct = 0.5
    with pytest.raises(InvalidParameterError, match="max_stop_pct"):
        s._validate()
