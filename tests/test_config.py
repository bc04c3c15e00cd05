"""
Tests for configuration loading and validation.
"""

import pytest
import yaml

from mpc_stack import (
    DEFAULT_CONFIG_PATH,
    ConfigError,
    StackConfig,
    build_stack_config,
    load_config,
    load_stack_config,
)


def _write(tmp_path, data, name="config.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


def test_shipped_config_matches_defaults():
    """config/mpc_stack_config.yaml and the dataclass defaults agree."""
    config = load_stack_config(str(DEFAULT_CONFIG_PATH))
    defaults = StackConfig()
    assert config.vehicle == defaults.vehicle
    assert config.timing == defaults.timing
    assert config.fallback == defaults.fallback
    assert config.reference.min_points == defaults.reference.min_points
    assert config.optimizer.horizon_steps == defaults.optimizer.horizon_steps
    assert config.optimizer.time_budget_s <= config.timing.latency_s


def test_empty_config_uses_defaults():
    config = build_stack_config({})
    assert config.vehicle.lf == pytest.approx(2.67)
    assert config.reference.min_points == 4


def test_partial_sections_override(tmp_path):
    path = _write(tmp_path, {"vehicle": {"lf": 3.0}, "timing": {"latency_s": 0.2}})
    config = load_stack_config(str(path))
    assert config.vehicle.lf == 3.0
    assert config.vehicle.max_steering_deg == 25.0
    assert config.timing.latency_s == 0.2


def test_missing_explicit_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yaml"))


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("vehicle: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_non_mapping_root(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigError):
        load_config(str(path))


@pytest.mark.parametrize("raw", [
    {"vehicle": {"lf": 0.0}},
    {"vehicle": {"lf": -1.0}},
    {"vehicle": {"max_steering_deg": 0.0}},
    {"timing": {"latency_s": -0.1}},
    {"reference": {"polynomial_degree": 3, "min_waypoints": 3}},
    {"reference": {"polynomial_degree": 0}},
    {"optimizer": {"horizon_steps": 1}},
    {"optimizer": {"time_budget_s": 0.5}},
    {"fallback": {"policy": "coast"}},
    {"fallback": {"brake_throttle": 0.2}},
    {"server": {"port": 0}},
])
def test_invalid_values(raw):
    with pytest.raises(ConfigError):
        build_stack_config(raw)


def test_unknown_key():
    with pytest.raises(ConfigError, match="lff"):
        build_stack_config({"vehicle": {"lff": 2.0}})


def test_unknown_section():
    with pytest.raises(ConfigError):
        build_stack_config({"perception": {}})


def test_section_must_be_mapping():
    with pytest.raises(ConfigError):
        build_stack_config({"vehicle": 3})


def test_zero_budget_allowed():
    config = build_stack_config({"optimizer": {"time_budget_s": 0.0}})
    assert config.optimizer.time_budget_s == 0.0


@pytest.mark.parametrize("raw", [
    {"vehicle": {"lf": "abc"}},
    {"vehicle": {"max_steering_deg": None}},
    {"reference": {"polynomial_degree": "3"}},
    {"optimizer": {"dt": [0.1]}},
    {"server": {"port": "4567"}},
])
def test_wrongly_typed_values_raise_config_error(raw):
    with pytest.raises(ConfigError, match="type"):
        build_stack_config(raw)


@pytest.mark.parametrize("weights", [
    [100.0, 100.0],
    {"ctee": 1.0},
    {"cte": "high"},
    {"cte": -1.0},
])
def test_invalid_weights(weights):
    with pytest.raises(ConfigError, match="weights"):
        build_stack_config({"optimizer": {"weights": weights}})


def test_partial_weights_allowed():
    config = build_stack_config({"optimizer": {"weights": {"cte": 50}}})
    assert config.optimizer.weights == {"cte": 50}
