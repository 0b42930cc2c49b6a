"""Speed curve implementations.

Curves turn sensor readings into a PWM value in [0, 255]. They are
recomputed fully on every evaluation; current_value() returns the
last result without recomputing.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from ..config import (
    FUNCTION_AVERAGE,
    FUNCTION_DELTA,
    FUNCTION_DIFFERENCE,
    FUNCTION_MAXIMUM,
    FUNCTION_MINIMUM,
    FUNCTION_SUM,
    FUNCTIONS,
    CurveConfig,
)
from ..errors import ConfigurationError
from .loops import MAX_PWM_VALUE, PidLoop, coerce
from .registry import Registry
from .smoothing import interpolate_linear

logger = logging.getLogger(__name__)


class SpeedCurve:
    """Base class for speed curves."""

    def __init__(self, curve_id: str):
        self.curve_id = curve_id
        self._value = 0
        self._lock = threading.Lock()

    def get_id(self) -> str:
        return self.curve_id

    def evaluate(self) -> int:
        """Compute the curve value.

        Returns:
            PWM value, nominally 0-255
        """
        raise NotImplementedError

    def current_value(self) -> int:
        """Get the last evaluated value."""
        with self._lock:
            return self._value

    def _set_value(self, value: int) -> int:
        with self._lock:
            self._value = value
        return value


class LinearSpeedCurve(SpeedCurve):
    """Maps one sensor's temperature linearly onto the PWM range."""

    def __init__(self, curve_id: str, sensors: Registry, sensor_id: str,
                 min_temp: Optional[float] = None, max_temp: Optional[float] = None,
                 steps: Optional[Dict[float, float]] = None):
        """Initialize with either temperature bounds or control points.

        Args:
            curve_id: Unique curve id
            sensors: Registry to look the sensor up in
            sensor_id: Id of the sensor to follow
            min_temp: Temperature (°C) at and below which the value is 0
            max_temp: Temperature (°C) at and above which the value is 255
            steps: Mapping of temperature (°C) to PWM value
        """
        super().__init__(curve_id)
        if not steps:
            if min_temp is None or max_temp is None:
                raise ValueError("Must provide steps or min_temp and max_temp")
            if min_temp >= max_temp:
                raise ValueError(f"min_temp ({min_temp}°C) must be below max_temp ({max_temp}°C)")

        self.sensors = sensors
        self.sensor_id = sensor_id
        self.min_temp = min_temp
        self.max_temp = max_temp
        self.steps = dict(steps) if steps else None

    def evaluate(self) -> int:
        avg = self.sensors.get(self.sensor_id).get_moving_avg()

        if self.steps:
            value = round(interpolate_linear(self.steps, avg / 1000))
        else:
            min_temp = self.min_temp * 1000
            max_temp = self.max_temp * 1000
            ratio = coerce((avg - min_temp) / (max_temp - min_temp), 0.0, 1.0)
            value = int(ratio * MAX_PWM_VALUE)

        logger.debug(f"Curve {self.curve_id}: sensor {self.sensor_id} avg {avg:.0f} -> {value}")
        return self._set_value(value)


class PidSpeedCurve(SpeedCurve):
    """Drives a sensor towards a set point with a PID loop."""

    def __init__(self, curve_id: str, sensors: Registry, sensor_id: str, set_point: float,
                 p: float, i: float, d: float, clock: Callable[[], float] = time.monotonic):
        super().__init__(curve_id)
        self.sensors = sensors
        self.sensor_id = sensor_id
        self.set_point = set_point
        self.pid = PidLoop(p, i, d, 0.0, 1.0, clock=clock)

    def evaluate(self) -> int:
        measured = self.sensors.get(self.sensor_id).get_moving_avg() / 1000
        output = coerce(self.pid.loop(self.set_point, measured), 0.0, 1.0)
        value = int(output * MAX_PWM_VALUE)
        logger.debug(f"Curve {self.curve_id}: {measured:.1f}°C vs set point {self.set_point}°C -> {value}")
        return self._set_value(value)


class FunctionSpeedCurve(SpeedCurve):
    """Combines the values of other curves."""

    def __init__(self, curve_id: str, curves: Registry, function: str, curve_ids: List[str]):
        super().__init__(curve_id)
        if function not in FUNCTIONS:
            raise ConfigurationError(f"Unknown curve function '{function}'")
        if not curve_ids:
            raise ValueError("Must provide at least one curve")

        self.curves = curves
        self.function = function
        self.curve_ids = list(curve_ids)

    def evaluate(self) -> int:
        values = [self.curves.get(curve_id).evaluate() for curve_id in self.curve_ids]

        if self.function == FUNCTION_SUM:
            value = min(MAX_PWM_VALUE, sum(values))
        elif self.function == FUNCTION_DIFFERENCE:
            value = max(0, values[0] - sum(values[1:]))
        elif self.function == FUNCTION_DELTA:
            value = max(values) - min(values)
        elif self.function == FUNCTION_MINIMUM:
            value = min(values)
        elif self.function == FUNCTION_MAXIMUM:
            value = max(values)
        elif self.function == FUNCTION_AVERAGE:
            value = sum(values) // len(values)
        else:
            raise ConfigurationError(f"Unknown curve function '{self.function}'")

        logger.debug(f"Curve {self.curve_id}: {self.function}({values}) -> {value}")
        return self._set_value(value)


def create_curve(config: CurveConfig, sensors: Registry, curves: Registry) -> SpeedCurve:
    """Create a speed curve from its configuration.

    Raises:
        ConfigurationError: If the config names no curve kind
    """
    if config.linear is not None:
        return LinearSpeedCurve(config.id, sensors, config.linear.sensor,
                                min_temp=config.linear.min, max_temp=config.linear.max,
                                steps=config.linear.steps)
    if config.pid is not None:
        pid = config.pid
        return PidSpeedCurve(config.id, sensors, pid.sensor, pid.set_point, pid.p, pid.i, pid.d)
    if config.function is not None:
        return FunctionSpeedCurve(config.id, curves, config.function.type, config.function.curves)
    raise ConfigurationError(f"Curve {config.id} has no kind configured")
