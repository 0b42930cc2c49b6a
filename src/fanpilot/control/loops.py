"""
Control Loop Module

Control loops move the curve target toward the value written to the fan,
one step per controller tick. Implementations keep timing and output
state between calls and are meant to be driven by a single thread.
"""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MIN_PWM_VALUE = 0
MAX_PWM_VALUE = 255


def coerce(value: float, lower: float, upper: float) -> float:
    """Clamp value into [lower, upper]"""
    return max(lower, min(upper, value))


class PidLoop:
    """Positional PID loop with output clamping and integral anti-windup"""

    def __init__(self, p: float, i: float, d: float,
                 out_min: float = 0.0, out_max: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize PID loop

        Args:
            p: Proportional gain
            i: Integral gain
            d: Derivative gain
            out_min: Lowest output value
            out_max: Highest output value
            clock: Monotonic time source in seconds
        """
        if out_min > out_max:
            raise ValueError(f"out_min ({out_min}) cannot be greater than out_max ({out_max})")

        self.p = p
        self.i = i
        self.d = d
        self.out_min = out_min
        self.out_max = out_max
        self._clock = clock

        self._integral = 0.0
        self._last_error: Optional[float] = None
        self._last_time: Optional[float] = None
        self._last_output = 0.0

    @property
    def integral(self) -> float:
        return self._integral

    def reset(self) -> None:
        """Forget all accumulated state"""
        self._integral = 0.0
        self._last_error = None
        self._last_time = None
        self._last_output = 0.0

    def loop(self, target: float, measured: float) -> float:
        """Compute the next output

        The first call only applies the proportional term. A call with
        no elapsed time returns the previous output unchanged.

        Args:
            target: Desired value
            measured: Current value

        Returns:
            Clamped loop output
        """
        now = self._clock()
        error = target - measured

        if self._last_time is None:
            output = coerce(self.p * error, self.out_min, self.out_max)
            self._last_time = now
            self._last_error = error
            self._last_output = output
            return output

        dt = now - self._last_time
        if dt <= 0:
            return self._last_output

        p_term = self.p * error
        d_term = self.d * (error - self._last_error) / dt
        integral = self._integral + error * dt

        # Anti-windup: stop integrating while saturated in the error's direction
        unclamped = p_term + self.i * integral + d_term
        saturated_high = unclamped > self.out_max and self.i * error > 0
        saturated_low = unclamped < self.out_min and self.i * error < 0
        if not (saturated_high or saturated_low):
            self._integral = integral

        output = coerce(p_term + self.i * self._integral + d_term, self.out_min, self.out_max)

        self._last_time = now
        self._last_error = error
        self._last_output = output
        return output


class ControlLoop:
    """Base class for fan control loops

    A loop keeps its own previous output so it never has to be fed the
    PWM value written to the fan, which lives in a different range.
    """

    _last_output: Optional[float] = None

    def loop(self, target: float, measured: float) -> float:
        """Get the adjustment to apply to measured to approach target

        Args:
            target: Desired value
            measured: Previous output of the loop

        Returns:
            Signed adjustment
        """
        raise NotImplementedError

    def cycle(self, target: float) -> int:
        """Advance the loop toward target

        Args:
            target: Value the curve asks for, 0-255

        Returns:
            Next value, rounded and clamped to [0, 255]
        """
        measured = target if self._last_output is None else self._last_output
        value = coerce(measured + self.loop(target, measured), MIN_PWM_VALUE, MAX_PWM_VALUE)
        self._last_output = value
        return int(round(value))


class DirectControlLoop(ControlLoop):
    """Moves toward the target, optionally rate limited per second"""

    def __init__(self, max_pwm_change_per_cycle: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.max_pwm_change_per_cycle = max_pwm_change_per_cycle
        self._clock = clock
        self._last_time: Optional[float] = None

    def loop(self, target: float, measured: float) -> float:
        now = self._clock()
        dt = 1.0 if self._last_time is None else now - self._last_time
        self._last_time = now

        error = target - measured
        if self.max_pwm_change_per_cycle is None:
            return error

        limit = self.max_pwm_change_per_cycle * max(dt, 0.0)
        return coerce(error, -limit, limit)


class PidControlLoop(ControlLoop):
    """Drives the PWM value with a PID loop clamped to the PWM range"""

    DEFAULT_P = 0.05
    DEFAULT_I = 0.4
    DEFAULT_D = 0.01

    def __init__(self, p: float = DEFAULT_P, i: float = DEFAULT_I, d: float = DEFAULT_D,
                 clock: Callable[[], float] = time.monotonic):
        self.pid = PidLoop(p, i, d, MIN_PWM_VALUE, MAX_PWM_VALUE, clock=clock)
        # Ramp up from a stopped fan
        self._last_output = 0.0

    def loop(self, target: float, measured: float) -> float:
        output = self.pid.loop(target, measured)
        return output - measured
