"""
Shared test fixtures

In-memory fans and sensors standing in for real hardware.
"""

from typing import Callable, Optional

import pytest

from fanpilot.control.registry import Registry
from fanpilot.errors import HardwareIOError
from fanpilot.hardware.fans import ControlMode, Fan, FanFeature
from fanpilot.hardware.sensors import Sensor
from fanpilot.persistence import Persistence


class FakeSensor(Sensor):
    """Sensor returning a fixed value"""

    def __init__(self, sensor_id: str, value: float = 0.0):
        super().__init__(sensor_id)
        self.value = value
        self.set_moving_avg(value)
        self.fail = False

    def get_value(self) -> float:
        if self.fail:
            raise HardwareIOError("sensor unavailable")
        return self.value


class FakeFan(Fan):
    """Fan simulating RPM and PWM quantization in memory"""

    def __init__(self, fan_id: str = "fan1", curve_id: str = "curve1",
                 rpm_for_pwm: Optional[Callable[[int], int]] = None,
                 reported_pwm: Optional[Callable[[int], int]] = None,
                 features=None, pwm_enabled: int = ControlMode.AUTO, pwm: int = 128, **kwargs):
        super().__init__(fan_id, curve_id, **kwargs)
        self.rpm_for_pwm = rpm_for_pwm or (lambda p: p * 10)
        self.reported_pwm = reported_pwm or (lambda p: p)
        self.features = frozenset(features if features is not None else FanFeature)
        self.pwm = pwm
        self.pwm_enabled = pwm_enabled
        self.writes = []
        self.mode_writes = []
        self.fail_writes = False
        self.rejected_modes = set()

    def get_pwm(self) -> int:
        return self.reported_pwm(self.pwm)

    def set_pwm(self, pwm: int) -> None:
        if self.fail_writes:
            raise HardwareIOError("write failed")
        self.pwm = pwm
        self.writes.append(pwm)

    def get_rpm(self) -> int:
        return self.rpm_for_pwm(self.pwm)

    def get_pwm_enabled(self) -> int:
        return self.pwm_enabled

    def set_pwm_enabled(self, mode: int) -> None:
        if self.fail_writes or mode in self.rejected_modes:
            raise HardwareIOError(f"mode {mode} rejected")
        self.pwm_enabled = mode
        self.mode_writes.append(mode)


class MemoryPersistence(Persistence):
    """Persistence keeping everything in dictionaries"""

    def __init__(self):
        self.pwm_data = {}
        self.pwm_maps = {}

    def load_fan_pwm_data(self, fan_id):
        return self.pwm_data.get(fan_id)

    def save_fan_pwm_data(self, fan_id, data):
        self.pwm_data[fan_id] = dict(data)

    def delete_fan_pwm_data(self, fan_id):
        self.pwm_data.pop(fan_id, None)

    def load_fan_pwm_map(self, fan_id):
        return self.pwm_maps.get(fan_id)

    def save_fan_pwm_map(self, fan_id, pwm_map):
        self.pwm_maps[fan_id] = dict(pwm_map)

    def delete_fan_pwm_map(self, fan_id):
        self.pwm_maps.pop(fan_id, None)


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sensors():
    return Registry("sensor")


@pytest.fixture
def curves():
    return Registry("curve")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def persistence():
    return MemoryPersistence()
