"""
Tests for configuration loading and validation.
"""

import json

import pytest

from ad_spend_optimizer import OptimizerConfig


def test_defaults_are_valid():
    config = OptimizerConfig()
    assert config.validate() is True
    assert config.prediction_horizons == {7: 0.3, 14: 0.6, 30: 1.0}
    assert config.attribution_delay_days == 3
    assert config.observation_window_days == 7


def test_file_round_trip_restores_integer_horizons(tmp_path):
    path = tmp_path / 'optimizer.json'
    OptimizerConfig(allocation_step=10.0, enable_auto_rollback=True).to_file(str(path))

    # JSON object keys are strings on disk
    assert '7' in json.loads(path.read_text())['prediction_horizons']

    loaded = OptimizerConfig.from_file(str(path))
    assert loaded.allocation_step == 10.0
    assert loaded.enable_auto_rollback is True
    assert loaded.prediction_horizons == {7: 0.3, 14: 0.6, 30: 1.0}
    assert loaded == OptimizerConfig(allocation_step=10.0, enable_auto_rollback=True)


def test_unknown_options_are_rejected():
    with pytest.raises(ValueError, match="Unknown configuration options: bogus"):
        OptimizerConfig.from_dict({'bogus': 1})


def test_validation_collects_every_error():
    config = OptimizerConfig(allocation_step=0, mutation_timeout_seconds=0, telemetry_exporter='statsd')
    with pytest.raises(ValueError) as excinfo:
        config.validate()

    message = str(excinfo.value)
    assert "Allocation step must be positive" in message
    assert "Mutation timeout must be positive" in message
    assert "Telemetry exporter" in message


@pytest.mark.parametrize("overrides, fragment", [
    ({'control_min': 500.0, 'control_max': 100.0}, "Control min"),
    ({'band_hold_ratio': 1.5}, "Band ratios"),
    ({'prediction_horizons': {}}, "At least one prediction horizon"),
    ({'prediction_horizons': {7: 1.5}}, "Horizon multiplier"),
    ({'rollback_score_threshold': 30.0}, "Rollback score threshold"),
    ({'fallback_confidence': 1.5}, "fallback_confidence"),
    ({'negation_exact_clicks': 5}, "Exact negation clicks"),
])
def test_invalid_values(overrides, fragment):
    with pytest.raises(ValueError, match=fragment):
        OptimizerConfig(**overrides).validate()


def test_engine_refuses_invalid_config(make_engine):
    with pytest.raises(ValueError, match="Configuration validation failed"):
        make_engine(execution_max_workers=0)
