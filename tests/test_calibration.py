"""
Fan Calibration Tests

This module contains tests for measuring fan RPM curves and PWM maps.
"""

import itertools
import logging

import pytest

from fanpilot.control.calibration import FanCalibrator
from fanpilot.control.supervisor import StopSignal
from fanpilot.errors import CalibrationIncompleteError, HardwareIOError
from fanpilot.hardware.fans import FanFeature

from conftest import FakeFan


@pytest.fixture
def stop():
    return StopSignal()


def make_calibrator(fan, stop, **kwargs):
    settings = dict(pwm_set_delay=0, fan_response_delay=0, settle_timeout=1.0, settle_sample_interval=0)
    settings.update(kwargs)
    return FanCalibrator(fan, stop, **settings)


def test_measure_rpm_curve(stop):
    """Test every PWM value is measured"""
    fan = FakeFan(rpm_for_pwm=lambda p: 0 if p < 20 else p * 10)
    data = make_calibrator(fan, stop).measure_rpm_curve()

    assert len(data) == 256
    assert data[0] == 0
    assert data[19] == 0
    assert data[20] == 200
    assert data[255] == 2550
    assert fan.writes == list(range(256))


def test_measure_rpm_curve_skips_unhonored_values(stop):
    """Test values the hardware does not report back are skipped"""
    fan = FakeFan(reported_pwm=lambda p: p - p % 4)
    data = make_calibrator(fan, stop).measure_rpm_curve()

    assert sorted(data) == list(range(0, 256, 4))
    assert data[128] == 1280


def test_measure_rpm_curve_without_pwm_sensor(stop):
    """Test fans without PWM read-back are measured without verification"""
    fan = FakeFan(reported_pwm=lambda p: 0, features={FanFeature.RPM_SENSOR})
    data = make_calibrator(fan, stop).measure_rpm_curve()
    assert len(data) == 256


def test_measure_rpm_curve_nothing_accepted(stop):
    """Test a fan rejecting every value fails calibration"""
    fan = FakeFan(reported_pwm=lambda p: -1)
    with pytest.raises(CalibrationIncompleteError, match="did not accept"):
        make_calibrator(fan, stop).measure_rpm_curve()


def test_measure_rpm_curve_interrupted(stop):
    """Test a stopped signal aborts calibration"""
    stop.set()
    with pytest.raises(CalibrationIncompleteError, match="interrupted"):
        make_calibrator(FakeFan(), stop).measure_rpm_curve()


def test_measure_rpm_curve_hardware_error(stop):
    """Test hardware failures propagate"""
    fan = FakeFan()
    fan.fail_writes = True
    with pytest.raises(HardwareIOError):
        make_calibrator(fan, stop).measure_rpm_curve()


def test_wait_for_fan_to_settle(stop):
    """Test a steady fan settles"""
    fan = FakeFan(rpm_for_pwm=lambda p: 1200)
    assert make_calibrator(fan, stop).wait_for_fan_to_settle()


def test_wait_for_fan_to_settle_timeout(stop):
    """Test the settle wait is bounded"""
    counter = itertools.count()
    fan = FakeFan(rpm_for_pwm=lambda p: next(counter) * 100)
    calibrator = make_calibrator(fan, stop, settle_timeout=0.05, settle_sample_interval=0.001)
    assert not calibrator.wait_for_fan_to_settle()


def test_wait_for_fan_to_settle_skips_failed_readings(stop, caplog):
    """Test failed RPM readings are logged and sampling continues"""
    counter = itertools.count()

    def flaky(pwm):
        if next(counter) % 3 == 0:
            raise HardwareIOError("read failed")
        return 1200
    fan = FakeFan(rpm_for_pwm=flaky)

    with caplog.at_level(logging.WARNING):
        assert make_calibrator(fan, stop).wait_for_fan_to_settle()
    assert "failed to read RPM" in caplog.text


def test_settle_wait_only_for_first_value(stop):
    """Test only the first accepted value waits for the fan to settle"""
    fan = FakeFan()
    calibrator = make_calibrator(fan, stop)
    calls = []
    calibrator.wait_for_fan_to_settle = lambda: calls.append(fan.pwm) or True

    calibrator.measure_rpm_curve()
    assert calls == [0]


def test_measure_pwm_map(stop):
    """Test the reported PWM is recorded for every requested value"""
    fan = FakeFan(reported_pwm=lambda p: min(255, (p // 10) * 10))
    pwm_map = make_calibrator(fan, stop).measure_pwm_map()

    assert len(pwm_map) == 256
    assert pwm_map[0] == 0
    assert pwm_map[58] == 50
    assert pwm_map[255] == 250


def test_measure_pwm_map_without_pwm_sensor(stop):
    """Test fans without PWM read-back get the identity table"""
    fan = FakeFan(features={FanFeature.RPM_SENSOR})
    pwm_map = make_calibrator(fan, stop).measure_pwm_map()

    assert pwm_map == {pwm: pwm for pwm in range(256)}
    assert fan.writes == []
