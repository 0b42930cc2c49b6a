"""
Fan Controller Module

This module owns the lifecycle of a single fan: taking over control,
calibrating, building the PWM quantization table, the periodic
adjustment tick, never-stop enforcement and restoring the original
fan state on exit.
"""

import copy
import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..errors import CalibrationIncompleteError, HardwareIOError
from ..hardware.fans import ControlMode, Fan, FanFeature
from ..persistence import Persistence
from .calibration import FanCalibrator
from .loops import MAX_PWM_VALUE, MIN_PWM_VALUE, ControlLoop, DirectControlLoop
from .registry import Registry
from .smoothing import (
    extract_keys_with_distinct_values,
    find_closest,
    interpolate_linearly,
    interpolate_step,
    update_moving_avg,
)
from .supervisor import StopSignal, TaskGroup

logger = logging.getLogger(__name__)

NEVER_STOP_SENTINEL = -1
STALLED_RPM_SEED = 1.0


class ControllerState(Enum):
    """Fan controller lifecycle states"""
    STARTING = "starting"
    CALIBRATING = "calibrating"
    MAPPING = "mapping"
    ACTIVE = "active"
    RESTORING = "restoring"
    STOPPED = "stopped"


@dataclass
class ControllerSettings:
    """Timing and tuning values shared by all fan controllers"""
    adjustment_tick_rate: float = 0.2
    rpm_polling_rate: float = 1.0
    rpm_rolling_window_size: int = 10
    pwm_set_delay: float = 0.005
    fan_response_delay: float = 2.0
    max_rpm_diff_for_settled_fan: float = 20
    fan_settle_timeout: float = 60.0
    settle_sample_interval: float = 1.0
    warmup_delay: float = 2.4
    init_lock: Optional[threading.Lock] = None

    @classmethod
    def from_config(cls, config, init_lock: Optional[threading.Lock] = None) -> "ControllerSettings":
        return cls(
            adjustment_tick_rate=config.fan_controller.adjustment_tick_rate,
            rpm_polling_rate=config.rpm_polling_rate,
            rpm_rolling_window_size=config.rpm_rolling_window_size,
            pwm_set_delay=config.fan_controller.pwm_set_delay,
            fan_response_delay=config.fan_response_delay,
            max_rpm_diff_for_settled_fan=config.max_rpm_diff_for_settled_fan,
            fan_settle_timeout=config.fan_settle_timeout,
            # Let sensor averages fill before trusting curves
            warmup_delay=2 + 2 * config.temp_sensor_polling_rate,
            init_lock=init_lock,
        )


@dataclass
class FanControllerStatistics:
    unexpected_pwm_value_count: int = 0
    increased_min_pwm_count: int = 0
    min_pwm_offset: int = 0


@dataclass
class FanSnapshot:
    """Point in time copy of a fan controller's state"""
    fan_id: str
    state: ControllerState
    never_stop: bool
    min_pwm: int
    start_pwm: int
    max_pwm: int
    last_set_pwm: Optional[int]
    rpm_avg: float
    original_pwm_enabled: Optional[int]
    statistics: FanControllerStatistics
    curve_data: Dict[int, float] = field(default_factory=dict)
    pwm_map: Dict[int, int] = field(default_factory=dict)


def compute_pwm_boundaries(data: Dict[int, float], start_pwm: Optional[int] = None) -> Tuple[int, int]:
    """Derive the start and max PWM from calibration data

    The data is expanded to every PWM value first. The start PWM is the
    lowest value with a non-zero RPM, the max PWM the value reaching the
    highest RPM.

    Args:
        data: Mapping of PWM value to measured RPM
        start_pwm: Explicit start PWM overriding the derived one, ignored if 255

    Returns:
        Tuple of (start_pwm, max_pwm)
    """
    derived_start = MAX_PWM_VALUE
    max_pwm = MAX_PWM_VALUE

    if not data:
        derived_start = MIN_PWM_VALUE
    else:
        expanded = interpolate_linearly(data, MIN_PWM_VALUE, MAX_PWM_VALUE)
        max_rpm = 0.0
        start_found = False
        for pwm in sorted(expanded):
            rpm = expanded[pwm]
            if rpm > max_rpm:
                max_rpm = rpm
                max_pwm = pwm
            if not start_found and rpm > 0:
                derived_start = pwm
                start_found = True

    if start_pwm is not None and start_pwm != MAX_PWM_VALUE:
        derived_start = start_pwm

    return derived_start, max_pwm


def snap_to_distinct_value(target: int, pwm_values: List[int], min_pwm: int) -> int:
    """Snap target to the closest distinct PWM value, never below min_pwm

    Args:
        target: Desired PWM value
        pwm_values: Sorted PWM values the hardware distinguishes
        min_pwm: Lowest PWM value the fan may run at

    Returns:
        Snapped PWM value
    """
    snapped = find_closest(target, pwm_values)
    if snapped < min_pwm:
        snapped = next((pwm for pwm in pwm_values if pwm >= min_pwm), snapped)
    return snapped


class FanController:
    """Controls one fan according to its curve"""

    def __init__(self, fan: Fan, curves: Registry, persistence: Persistence,
                 stop: StopSignal, control_loop: Optional[ControlLoop] = None,
                 settings: Optional[ControllerSettings] = None):
        """Initialize fan controller

        Args:
            fan: Fan to control
            curves: Registry holding the fan's curve
            persistence: Storage for calibration data and PWM maps
            stop: Signal ending the controller
            control_loop: Loop smoothing target changes, jumps directly if None
            settings: Timing and tuning values
        """
        self.fan = fan
        self.curves = curves
        self.persistence = persistence
        self.stop = stop
        self.control_loop = control_loop or DirectControlLoop()
        self.settings = settings or ControllerSettings()

        self._lock = threading.Lock()
        self._halt: Optional[StopSignal] = None
        self.state = ControllerState.STOPPED
        self.statistics = FanControllerStatistics()

        self.min_pwm = MIN_PWM_VALUE
        self.start_pwm = MIN_PWM_VALUE
        self.max_pwm = MAX_PWM_VALUE
        self.last_set_pwm: Optional[int] = None
        self.rpm_avg = 0.0
        self.curve_data: Dict[int, float] = {}
        self.pwm_map: Dict[int, int] = {}
        self.pwm_values: List[int] = []
        self.original_pwm_enabled: Optional[int] = None
        self.original_pwm: Optional[int] = None
        self._force_write = False

    @property
    def fan_id(self) -> str:
        return self.fan.get_id()

    def _set_state(self, state: ControllerState) -> None:
        with self._lock:
            self.state = state
        logger.info(f"Fan {self.fan_id}: {state.value}")

    def run(self) -> None:
        """Run the controller until stopped or a fan error occurs

        The fan is always handed back in its original mode, or at full
        speed if that fails.

        Raises:
            HardwareIOError: If the fan fails while being controlled
            CalibrationIncompleteError: If calibration could not complete
        """
        self._halt = self.stop.child()
        self.last_set_pwm = None
        self._force_write = False
        try:
            if not self._take_control():
                return
            try:
                self._initialize()
            except CalibrationIncompleteError:
                if self._halt.is_set():
                    logger.info(f"Fan {self.fan_id}: initialization cancelled")
                    return
                raise

            self._set_state(ControllerState.ACTIVE)
            group = TaskGroup(self._halt, name=f"fan-{self.fan_id}")
            group.add("rpm", self._rpm_monitor_loop)
            group.add("tick", self._tick_loop)
            group.run()
        finally:
            self._halt.close()
            self.restore()
            self._set_state(ControllerState.STOPPED)

    def _take_control(self) -> bool:
        """Remember the fan's state and switch to manual PWM

        Returns:
            False if cancelled while waiting for sensors to warm up
        """
        self._set_state(ControllerState.STARTING)
        if self.fan.supports(FanFeature.CONTROL_MODE):
            self.original_pwm_enabled = self.fan.get_pwm_enabled()
        if self.fan.supports(FanFeature.PWM_SENSOR):
            self.original_pwm = self.fan.get_pwm()
        if self.fan.should_never_stop() and not self.fan.supports(FanFeature.RPM_SENSOR):
            logger.warning(f"Fan {self.fan_id}: cannot guarantee never_stop without an RPM sensor")
        self._try_set_manual_pwm()

        if self.fan.supports(FanFeature.RPM_SENSOR):
            try:
                with self._lock:
                    self.rpm_avg = float(self.fan.get_rpm())
            except HardwareIOError as e:
                logger.warning(f"Fan {self.fan_id}: failed to read initial RPM: {e}")

        return not self._halt.wait(self.settings.warmup_delay)

    def _try_set_manual_pwm(self) -> None:
        if not self.fan.supports(FanFeature.CONTROL_MODE):
            return
        try:
            self.fan.set_pwm_enabled(ControlMode.PWM)
        except HardwareIOError as e:
            logger.warning(f"Fan {self.fan_id}: manual mode {int(ControlMode.PWM)} rejected ({e}), "
                           f"trying {int(ControlMode.DISABLED)}")
            self.fan.set_pwm_enabled(ControlMode.DISABLED)

    def _initialize(self) -> None:
        with self.settings.init_lock or nullcontext():
            calibrator = FanCalibrator(
                self.fan, self._halt,
                pwm_set_delay=self.settings.pwm_set_delay,
                fan_response_delay=self.settings.fan_response_delay,
                max_rpm_diff_for_settled_fan=self.settings.max_rpm_diff_for_settled_fan,
                settle_timeout=self.settings.fan_settle_timeout,
                settle_sample_interval=self.settings.settle_sample_interval,
            )

            try:
                data = self.persistence.load_fan_pwm_data(self.fan_id)
                if data is None and self.fan.supports(FanFeature.RPM_SENSOR):
                    self._set_state(ControllerState.CALIBRATING)
                    data = calibrator.measure_rpm_curve()
                    self.persistence.save_fan_pwm_data(self.fan_id, data)

                self._set_state(ControllerState.MAPPING)
                pwm_map = self._load_pwm_map(calibrator)
            except HardwareIOError as e:
                # Hardware failures during calibration disable the fan
                raise CalibrationIncompleteError(f"Calibration of fan {self.fan_id} failed: {e}") from e

        self.attach_calibration(data or {}, pwm_map)

    def _load_pwm_map(self, calibrator: FanCalibrator) -> Dict[int, int]:
        if self.fan.pwm_map:
            return {pwm: int(interpolate_step(self.fan.pwm_map, pwm)) for pwm in range(256)}

        pwm_map = self.persistence.load_fan_pwm_map(self.fan_id)
        if pwm_map is None:
            pwm_map = calibrator.measure_pwm_map()
            self.persistence.save_fan_pwm_map(self.fan_id, pwm_map)
        return pwm_map

    def attach_calibration(self, data: Dict[int, float], pwm_map: Dict[int, int]) -> None:
        """Install calibration data and the PWM map, and derive the PWM bounds"""
        start_pwm, max_pwm = compute_pwm_boundaries(data, self.fan.start_pwm)
        if self.fan.max_pwm is not None:
            max_pwm = self.fan.max_pwm

        if self.fan.min_pwm is not None:
            min_pwm = self.fan.min_pwm
        elif self.fan.should_never_stop():
            min_pwm = start_pwm
        else:
            min_pwm = MIN_PWM_VALUE

        with self._lock:
            self.curve_data = dict(data)
            self.pwm_map = dict(pwm_map)
            self.pwm_values = extract_keys_with_distinct_values(self.pwm_map)
            self.start_pwm = start_pwm
            self.max_pwm = max_pwm
            self.min_pwm = min(min_pwm, max_pwm)

        logger.info(f"Fan {self.fan_id}: min PWM {self.min_pwm}, start PWM {start_pwm}, "
                    f"max PWM {max_pwm}, {len(self.pwm_values)} distinct PWM values")
        if self.min_pwm > start_pwm:
            logger.warning(f"Fan {self.fan_id}: suspicious PWM settings, min PWM {self.min_pwm} "
                           f"is above start PWM {start_pwm}")

    def _tick_loop(self) -> None:
        while not self._halt.wait(self.settings.adjustment_tick_rate):
            self.update_fan_speed()

    def _rpm_monitor_loop(self) -> None:
        if not self.fan.supports(FanFeature.RPM_SENSOR):
            self._halt.wait()
            return
        while not self._halt.wait(self.settings.rpm_polling_rate):
            self.measure_rpm()

    def measure_rpm(self) -> None:
        """Sample the RPM into the moving average and the calibration data"""
        try:
            rpm = self.fan.get_rpm()
        except HardwareIOError as e:
            logger.warning(f"Fan {self.fan_id}: failed to read RPM: {e}")
            return

        with self._lock:
            self.rpm_avg = update_moving_avg(self.rpm_avg, self.settings.rpm_rolling_window_size, rpm)
            if self.last_set_pwm is not None:
                self.curve_data[self.last_set_pwm] = float(rpm)

    def update_fan_speed(self) -> None:
        """Run one adjustment tick

        Raises:
            HardwareIOError: If the fan cannot be read or written
        """
        self._check_pwm_interference()

        target = self.calculate_target_pwm()
        if target == NEVER_STOP_SENTINEL:
            return

        with self._lock:
            unchanged = target == self.last_set_pwm and not self._force_write
        if unchanged:
            return

        self.fan.set_pwm(target)
        with self._lock:
            self.last_set_pwm = target
            self._force_write = False
        logger.debug(f"Fan {self.fan_id}: set PWM {target}")

    def _check_pwm_interference(self) -> None:
        with self._lock:
            last_set = self.last_set_pwm
            expected = self.pwm_map.get(last_set, last_set) if last_set is not None else None
        if expected is None or not self.fan.supports(FanFeature.PWM_SENSOR):
            return

        current = self.fan.get_pwm()
        if current != expected:
            logger.warning(f"Fan {self.fan_id}: PWM was changed by a third party "
                           f"(expected {expected}, found {current})")
            with self._lock:
                self.statistics.unexpected_pwm_value_count += 1
                self._force_write = True

    def calculate_target_pwm(self) -> int:
        """Compute the PWM value the fan should run at

        Returns:
            PWM value, or NEVER_STOP_SENTINEL if a never-stop fan does not
            spin even at its maximum PWM
        """
        curve = self.curves.get(self.fan.get_curve_id())
        target = curve.evaluate()

        if not MIN_PWM_VALUE <= target <= MAX_PWM_VALUE:
            logger.warning(f"Fan {self.fan_id}: curve {curve.get_id()} returned out of range value {target}")
            target = max(MIN_PWM_VALUE, min(MAX_PWM_VALUE, target))

        with self._lock:
            last_set = self.last_set_pwm
            min_pwm = self.min_pwm
            max_pwm = self.max_pwm
            pwm_values = list(self.pwm_values) or list(range(256))
            rpm_avg = self.rpm_avg

        target = self.control_loop.cycle(target)

        target = min_pwm + int(target / MAX_PWM_VALUE * (max_pwm - min_pwm))
        target = snap_to_distinct_value(target, pwm_values, min_pwm)

        stalled = (self.fan.should_never_stop()
                   and self.fan.supports(FanFeature.RPM_SENSOR)
                   and int(rpm_avg) <= 0)
        if stalled and last_set is not None and target == last_set:
            if target >= max_pwm:
                logger.critical(f"Fan {self.fan_id} is not spinning at maximum PWM {max_pwm}, "
                                f"leaving it at {last_set}")
                return NEVER_STOP_SENTINEL

            with self._lock:
                self.min_pwm += 1
                self.statistics.increased_min_pwm_count += 1
                self.statistics.min_pwm_offset += 1
                self.rpm_avg = STALLED_RPM_SEED
                min_pwm = self.min_pwm
            # Step to the next value the hardware distinguishes
            target = next((pwm for pwm in pwm_values if pwm > target), target + 1)
            logger.warning(f"Fan {self.fan_id} is not spinning, raising min PWM to {min_pwm}")

        return target

    def restore(self) -> None:
        """Hand the fan back in its original state, or at full speed"""
        self._set_state(ControllerState.RESTORING)

        try:
            if self.original_pwm is not None:
                self.fan.set_pwm(self.original_pwm)
            if self.fan.supports(FanFeature.CONTROL_MODE):
                if self.original_pwm_enabled is None:
                    raise HardwareIOError("original PWM mode unknown")
                self.fan.set_pwm_enabled(self.original_pwm_enabled)
            elif self.original_pwm is None:
                raise HardwareIOError("original PWM unknown")
            logger.info(f"Fan {self.fan_id}: restored original state")
            return
        except HardwareIOError as e:
            logger.warning(f"Fan {self.fan_id}: failed to restore original state ({e}), "
                           f"falling back to maximum PWM")

        try:
            self.fan.set_pwm(MAX_PWM_VALUE)
        except HardwareIOError as e:
            logger.error(f"Fan {self.fan_id}: failed to set maximum PWM: {e}")

    def snapshot(self) -> FanSnapshot:
        """Get a copy of the controller state safe to hand to other threads"""
        with self._lock:
            return copy.deepcopy(FanSnapshot(
                fan_id=self.fan_id,
                state=self.state,
                never_stop=self.fan.should_never_stop(),
                min_pwm=self.min_pwm,
                start_pwm=self.start_pwm,
                max_pwm=self.max_pwm,
                last_set_pwm=self.last_set_pwm,
                rpm_avg=self.rpm_avg,
                original_pwm_enabled=self.original_pwm_enabled,
                statistics=self.statistics,
                curve_data=self.curve_data,
                pwm_map=self.pwm_map,
            ))
