"""
Configuration Tests

This module contains tests for loading and validating configurations.
"""

import copy

import pytest
import yaml

from fanpilot.config import (
    CONTROL_ALGORITHM_DIRECT,
    CONTROL_ALGORITHM_PID,
    find_curve_cycles,
    load_config,
    parse_config,
    validate_config,
)
from fanpilot.errors import ConfigurationError

# Test configuration
TEST_CONFIG = {
    "db_path": "/tmp/fanpilot.db.yaml",
    "run_fan_initialization_in_parallel": False,
    "rpm_rolling_window_size": 5,
    "fan_controller": {"adjustment_tick_rate": 0.5},
    "sensors": [
        {"id": "cpu", "hwmon": {"platform": "coretemp", "index": 1}},
        {"id": "ssd", "file": {"path": "/tmp/ssd"}},
        {"id": "gpu", "cmd": {"exec": "/usr/bin/gpu-temp", "args": ["--raw"]}},
    ],
    "curves": [
        {"id": "cpu_curve", "linear": {"sensor": "cpu", "min": 40, "max": 80}},
        {"id": "ssd_curve", "linear": {"sensor": "ssd", "steps": {40: 0, 60: 255}}},
        {"id": "gpu_curve", "pid": {"sensor": "gpu", "set_point": 60, "p": -0.05, "i": -0.005, "d": -0.005}},
        {"id": "case_curve", "function": {"type": "maximum", "curves": ["cpu_curve", "ssd_curve"]}},
    ],
    "fans": [
        {"id": "cpu_fan", "curve": "cpu_curve", "never_stop": True,
         "hwmon": {"platform": "nct67", "index": 1}},
        {"id": "case_fan", "curve": "case_curve", "min_pwm": 20, "pwm_map": {0: 0, 128: 100},
         "control_algorithm": {"direct": {"max_pwm_change_per_cycle": 10}},
         "file": {"path": "/tmp/pwm"}},
        {"id": "gpu_fan", "curve": "gpu_curve", "control_algorithm": "pid",
         "cmd": {"set_pwm": {"exec": "/usr/bin/setfan", "args": ["%pwm%"]},
                 "get_pwm": {"exec": "/usr/bin/getfan"}}},
    ],
}


def config_with(**changes):
    data = copy.deepcopy(TEST_CONFIG)
    data.update(changes)
    return data


def test_parse_config():
    """Test a full configuration is parsed"""
    config = parse_config(TEST_CONFIG)

    assert config.db_path == "/tmp/fanpilot.db.yaml"
    assert not config.run_fan_initialization_in_parallel
    assert config.rpm_rolling_window_size == 5
    assert config.fan_controller.adjustment_tick_rate == 0.5
    assert config.fan_controller.pwm_set_delay == 0.005

    assert config.sensors[0].hwmon.platform == "coretemp"
    assert config.sensors[1].file.path == "/tmp/ssd"
    assert config.sensors[2].cmd.args == ["--raw"]

    assert config.curves[1].linear.steps == {40.0: 0.0, 60.0: 255.0}
    assert config.curves[2].pid.p == -0.05
    assert config.curves[3].function.curves == ["cpu_curve", "ssd_curve"]

    cpu_fan, case_fan, gpu_fan = config.fans
    assert cpu_fan.never_stop
    assert cpu_fan.control_algorithm.kind == CONTROL_ALGORITHM_DIRECT
    assert case_fan.min_pwm == 20
    assert case_fan.pwm_map == {0: 0, 128: 100}
    assert case_fan.control_algorithm.max_pwm_change_per_cycle == 10
    assert gpu_fan.control_algorithm.kind == CONTROL_ALGORITHM_PID
    assert gpu_fan.control_algorithm.p == 0.05
    assert gpu_fan.cmd.set_pwm.args == ["%pwm%"]
    assert gpu_fan.cmd.get_rpm is None

    validate_config(config)


def test_parse_config_defaults():
    """Test an empty document yields the defaults"""
    config = parse_config(None)
    assert config.db_path == "/etc/fanpilot/fanpilot.db.yaml"
    assert config.run_fan_initialization_in_parallel
    assert config.max_rpm_diff_for_settled_fan == 20
    assert config.controller_restart_delay == 10
    assert config.fans == []


def test_parse_config_malformed():
    """Test malformed documents are rejected"""
    with pytest.raises(ConfigurationError, match="expected a mapping"):
        parse_config(["not", "a", "mapping"])

    with pytest.raises(ConfigurationError, match="missing required key 'curve'"):
        parse_config(config_with(fans=[{"id": "fan", "file": {"path": "/tmp/x"}}]))

    with pytest.raises(ConfigurationError, match="Invalid configuration value"):
        parse_config(config_with(rpm_rolling_window_size="many"))


def test_load_config(tmp_path):
    """Test configurations are loaded from YAML files"""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(TEST_CONFIG))

    config = load_config(str(path))
    assert [fan.id for fan in config.fans] == ["cpu_fan", "case_fan", "gpu_fan"]


def test_load_config_errors(tmp_path):
    """Test unreadable and unparsable files are rejected"""
    with pytest.raises(ConfigurationError, match="Failed to read"):
        load_config(str(tmp_path / "missing.yaml"))

    path = tmp_path / "broken.yaml"
    path.write_text("fans: [")
    with pytest.raises(ConfigurationError, match="Failed to parse"):
        load_config(str(path))


@pytest.mark.parametrize("changes,message", [
    ({"sensors": TEST_CONFIG["sensors"] + [{"id": "cpu", "file": {"path": "/x"}}]}, "Duplicate sensor id"),
    ({"sensors": [{"id": "cpu"}]}, "exactly one of hwmon, file or cmd"),
    ({"sensors": [{"id": "cpu", "hwmon": {"index": 1}}]}, "needs a path or a platform"),
])
def test_validate_sensors(changes, message):
    """Test sensor defects are rejected"""
    with pytest.raises(ConfigurationError, match=message):
        validate_config(parse_config(config_with(**changes)))


def test_validate_curve_defects():
    """Test curve defects are rejected"""
    cases = [
        ({"id": "bad", "function": {"type": "median", "curves": ["cpu_curve"]}}, "unknown function"),
        ({"id": "bad", "function": {"type": "sum", "curves": ["bad"]}}, "must not reference itself"),
        ({"id": "bad", "function": {"type": "sum", "curves": ["nope"]}}, "no curve with id 'nope'"),
        ({"id": "bad", "function": {"type": "sum", "curves": []}}, "at least one curve"),
        ({"id": "bad", "linear": {"sensor": "nope", "min": 1, "max": 2}}, "no sensor with id 'nope'"),
        ({"id": "bad", "linear": {"sensor": "cpu", "min": 80, "max": 40}}, "must be below"),
        ({"id": "bad", "linear": {"sensor": "cpu", "min": 80}}, "needs steps or min and max"),
        ({"id": "bad", "pid": {"sensor": "cpu", "set_point": 60}}, "all PID constants are zero"),
        ({"id": "bad"}, "exactly one of linear, pid or function"),
        ({"id": "cpu_curve", "linear": {"sensor": "cpu", "min": 1, "max": 2}}, "Duplicate curve id"),
    ]
    for curve, message in cases:
        data = config_with(curves=TEST_CONFIG["curves"] + [curve])
        with pytest.raises(ConfigurationError, match=message):
            validate_config(parse_config(data))


def test_validate_curve_cycle():
    """Test dependency cycles through several curves are rejected"""
    curves = TEST_CONFIG["curves"] + [
        {"id": "a", "function": {"type": "sum", "curves": ["b"]}},
        {"id": "b", "function": {"type": "sum", "curves": ["c", "cpu_curve"]}},
        {"id": "c", "function": {"type": "sum", "curves": ["a"]}},
    ]
    with pytest.raises(ConfigurationError, match="cycle detected: a -> b -> c"):
        validate_config(parse_config(config_with(curves=curves)))


def test_find_curve_cycles():
    """Test cycle detection reports every cycle and self reference"""
    config = parse_config({
        "curves": [
            {"id": "a", "function": {"type": "sum", "curves": ["b"]}},
            {"id": "b", "function": {"type": "sum", "curves": ["a"]}},
            {"id": "self", "function": {"type": "sum", "curves": ["self"]}},
            {"id": "x", "function": {"type": "sum", "curves": ["y", "missing"]}},
            {"id": "y", "linear": {"sensor": "s", "min": 0, "max": 1}},
        ]
    })
    assert sorted(find_curve_cycles(config.curves)) == [["a", "b"], ["self"]]


def test_find_curve_cycles_shared_children():
    """Test diamonds are not cycles"""
    config = parse_config({
        "curves": [
            {"id": "top", "function": {"type": "sum", "curves": ["left", "right"]}},
            {"id": "left", "function": {"type": "sum", "curves": ["leaf"]}},
            {"id": "right", "function": {"type": "sum", "curves": ["leaf"]}},
            {"id": "leaf", "linear": {"sensor": "s", "min": 0, "max": 1}},
        ]
    })
    assert find_curve_cycles(config.curves) == []


def test_validate_fan_defects():
    """Test fan defects are rejected"""
    base = TEST_CONFIG["fans"][0]
    cases = [
        ({**base, "id": "bad", "curve": "nope"},"no curve with id 'nope'"),
        ({"id": "bad", "curve": "cpu_curve"}, "exactly one of hwmon, file or cmd"),
        ({**base, "id": "bad", "min_pwm": 300}, "min_pwm 300 must be 0-255"),
        ({**base, "id": "bad", "min_pwm": 100, "max_pwm": 50}, "cannot be greater"),
        ({**base, "id": "bad", "control_algorithm": "fuzzy"}, "unknown control algorithm"),
        ({"id": "bad", "curve": "cpu_curve", "cmd": {"set_pwm": {"exec": "/bin/true"}}}, "need set_pwm and get_pwm"),
        (base, "Duplicate fan id"),
    ]
    for fan, message in cases:
        data = config_with(fans=TEST_CONFIG["fans"] + [fan])
        with pytest.raises(ConfigurationError, match=message):
            validate_config(parse_config(data))
