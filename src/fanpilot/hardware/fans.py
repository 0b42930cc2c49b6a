"""
Fan Back-ends

Every back-end exposes the same contract to the fan controller: PWM
and RPM access, the PWM control mode, and feature flags describing
what the hardware can report.
"""

import logging
import os
from enum import Enum, IntEnum
from typing import Dict, List, Optional

from ..errors import HardwareIOError, VerificationMismatchError
from .util import (
    DEFAULT_COMMAND_TIMEOUT,
    find_hwmon_device,
    read_int_from_file,
    safe_cmd_execution,
    write_int_to_file,
)

logger = logging.getLogger(__name__)

PWM_PLACEHOLDER = "%pwm%"


class FanFeature(Enum):
    """Optional capabilities of a fan back-end"""
    RPM_SENSOR = "rpm_sensor"      # RPM can be measured
    PWM_SENSOR = "pwm_sensor"      # Written PWM can be read back
    CONTROL_MODE = "control_mode"  # pwm_enable can be read and written


class ControlMode(IntEnum):
    """hwmon pwm_enable values"""
    DISABLED = 0  # Full speed, no software control
    PWM = 1       # Manual PWM control
    AUTO = 2      # Chip or firmware controlled


class Fan:
    """Base class for fan back-ends"""

    features = frozenset()

    def __init__(self, fan_id: str, curve_id: str, never_stop: bool = False,
                 min_pwm: Optional[int] = None, start_pwm: Optional[int] = None,
                 max_pwm: Optional[int] = None, pwm_map: Optional[Dict[int, int]] = None):
        """Initialize fan

        Args:
            fan_id: Unique fan id
            curve_id: Id of the curve driving this fan
            never_stop: Keep the fan spinning at all times
            min_pwm: Explicit lowest PWM, derived from calibration if None
            start_pwm: Explicit PWM at which the fan starts spinning
            max_pwm: Explicit highest PWM
            pwm_map: Explicit requested to reported PWM table
        """
        self.fan_id = fan_id
        self.curve_id = curve_id
        self.never_stop = never_stop
        self.min_pwm = min_pwm
        self.start_pwm = start_pwm
        self.max_pwm = max_pwm
        self.pwm_map = pwm_map

    def get_id(self) -> str:
        return self.fan_id

    def get_curve_id(self) -> str:
        return self.curve_id

    def should_never_stop(self) -> bool:
        return self.never_stop

    def supports(self, feature: FanFeature) -> bool:
        return feature in self.features

    def get_pwm(self) -> int:
        raise NotImplementedError

    def set_pwm(self, pwm: int) -> None:
        raise NotImplementedError

    def get_rpm(self) -> int:
        return 0

    def get_pwm_enabled(self) -> int:
        return ControlMode.PWM

    def set_pwm_enabled(self, mode: int) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.fan_id!r})"


class HwMonFan(Fan):
    """Fan controlled through hwmon sysfs attributes"""

    features = frozenset({FanFeature.RPM_SENSOR, FanFeature.PWM_SENSOR, FanFeature.CONTROL_MODE})

    def __init__(self, fan_id: str, curve_id: str, index: int,
                 path: Optional[str] = None, platform: Optional[str] = None, **kwargs):
        super().__init__(fan_id, curve_id, **kwargs)
        if path is None:
            if platform is None:
                raise ValueError("Either path or platform is required")
            path = find_hwmon_device(platform)

        self.pwm_path = os.path.join(path, f"pwm{index}")
        self.pwm_enable_path = f"{self.pwm_path}_enable"
        self.rpm_path = os.path.join(path, f"fan{index}_input")

    def get_pwm(self) -> int:
        return read_int_from_file(self.pwm_path)

    def set_pwm(self, pwm: int) -> None:
        write_int_to_file(pwm, self.pwm_path)

    def get_rpm(self) -> int:
        return read_int_from_file(self.rpm_path)

    def get_pwm_enabled(self) -> int:
        return read_int_from_file(self.pwm_enable_path)

    def set_pwm_enabled(self, mode: int) -> None:
        """Set pwm_enable and verify the hardware accepted it

        Raises:
            HardwareIOError: If the attribute cannot be written
            VerificationMismatchError: If the mode reads back differently
        """
        write_int_to_file(mode, self.pwm_enable_path)
        current = self.get_pwm_enabled()
        if current != mode:
            raise VerificationMismatchError(f"PWM mode stuck to {current}")


class FileFan(Fan):
    """Fan whose PWM is a plain integer file"""

    features = frozenset({FanFeature.PWM_SENSOR})

    def __init__(self, fan_id: str, curve_id: str, path: str, **kwargs):
        super().__init__(fan_id, curve_id, **kwargs)
        self.path = path

    def get_pwm(self) -> int:
        return read_int_from_file(self.path)

    def set_pwm(self, pwm: int) -> None:
        write_int_to_file(pwm, self.path)


class CmdFan(Fan):
    """Fan controlled through external commands"""

    def __init__(self, fan_id: str, curve_id: str,
                 set_pwm: Dict[str, object], get_pwm: Dict[str, object],
                 get_rpm: Optional[Dict[str, object]] = None,
                 timeout: float = DEFAULT_COMMAND_TIMEOUT, **kwargs):
        """Initialize command fan

        Args:
            set_pwm: Command writing the PWM, "%pwm%" in args is replaced by the value
            get_pwm: Command printing the current PWM
            get_rpm: Command printing the current RPM
            timeout: Seconds before a command is killed
        """
        super().__init__(fan_id, curve_id, **kwargs)
        self.set_pwm_cmd = set_pwm
        self.get_pwm_cmd = get_pwm
        self.get_rpm_cmd = get_rpm
        self.timeout = timeout

        features = {FanFeature.PWM_SENSOR}
        if get_rpm is not None:
            features.add(FanFeature.RPM_SENSOR)
        self.features = frozenset(features)

    def _run(self, cmd: Dict[str, object], args: Optional[List[str]] = None) -> str:
        return safe_cmd_execution(cmd["exec"], args if args is not None else cmd.get("args", []),
                                  timeout=self.timeout)

    def _run_int(self, cmd: Dict[str, object]) -> int:
        output = self._run(cmd)
        try:
            return int(float(output))
        except ValueError as e:
            raise HardwareIOError(f"Command {cmd['exec']} returned non-numeric output {output!r}") from e

    def get_pwm(self) -> int:
        return self._run_int(self.get_pwm_cmd)

    def set_pwm(self, pwm: int) -> None:
        args = [str(arg).replace(PWM_PLACEHOLDER, str(pwm)) for arg in self.set_pwm_cmd.get("args", [])]
        self._run(self.set_pwm_cmd, args)

    def get_rpm(self) -> int:
        if self.get_rpm_cmd is None:
            return 0
        return self._run_int(self.get_rpm_cmd)


def create_fan(config) -> Fan:
    """Create a fan back-end from a FanConfig

    Raises:
        ValueError: If the config names no back-end
    """
    common = dict(
        never_stop=config.never_stop,
        min_pwm=config.min_pwm,
        start_pwm=config.start_pwm,
        max_pwm=config.max_pwm,
        pwm_map=config.pwm_map,
    )
    if config.hwmon is not None:
        return HwMonFan(config.id, config.curve, index=config.hwmon.index,
                        path=config.hwmon.path, platform=config.hwmon.platform, **common)
    if config.file is not None:
        return FileFan(config.id, config.curve, path=config.file.path, **common)
    if config.cmd is not None:
        return CmdFan(config.id, config.curve,
                      set_pwm=config.cmd.set_pwm.as_dict(),
                      get_pwm=config.cmd.get_pwm.as_dict(),
                      get_rpm=config.cmd.get_rpm.as_dict() if config.cmd.get_rpm else None,
                      **common)
    raise ValueError(f"Fan {config.id} has no back-end configured")
