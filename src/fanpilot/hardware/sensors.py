"""
Temperature Sensor Back-ends

Sensors report temperatures in milli-degrees Celsius. A monitor
thread per sensor keeps its moving average current; curves only read
the average.
"""

import logging
import os
import threading
from typing import List, Optional

from ..control.smoothing import update_moving_avg
from ..control.supervisor import StopSignal
from ..errors import HardwareIOError
from .util import DEFAULT_COMMAND_TIMEOUT, find_hwmon_device, read_int_from_file, safe_cmd_execution

logger = logging.getLogger(__name__)


class Sensor:
    """Base class for temperature sensors"""

    def __init__(self, sensor_id: str):
        self.sensor_id = sensor_id
        self._moving_avg = 0.0
        self._lock = threading.Lock()

    def get_id(self) -> str:
        return self.sensor_id

    def get_value(self) -> float:
        """Read the instantaneous value in milli-degrees

        Raises:
            HardwareIOError: If the sensor cannot be read
        """
        raise NotImplementedError

    def get_moving_avg(self) -> float:
        with self._lock:
            return self._moving_avg

    def set_moving_avg(self, value: float) -> None:
        with self._lock:
            self._moving_avg = value


class HwMonSensor(Sensor):
    """hwmon tempN_input sensor"""

    def __init__(self, sensor_id: str, index: int,
                 path: Optional[str] = None, platform: Optional[str] = None):
        super().__init__(sensor_id)
        if path is None:
            if platform is None:
                raise ValueError("Either path or platform is required")
            path = find_hwmon_device(platform)
        self.input_path = os.path.join(path, f"temp{index}_input")

    def get_value(self) -> float:
        return float(read_int_from_file(self.input_path))


class FileSensor(Sensor):
    """Sensor reading an integer from a file"""

    def __init__(self, sensor_id: str, path: str):
        super().__init__(sensor_id)
        self.path = path

    def get_value(self) -> float:
        return float(read_int_from_file(self.path))


class CmdSensor(Sensor):
    """Sensor reading a number printed by an external command"""

    def __init__(self, sensor_id: str, executable: str, args: Optional[List[str]] = None,
                 timeout: float = DEFAULT_COMMAND_TIMEOUT):
        super().__init__(sensor_id)
        self.executable = executable
        self.args = list(args or [])
        self.timeout = timeout

    def get_value(self) -> float:
        output = safe_cmd_execution(self.executable, self.args, timeout=self.timeout)
        try:
            return float(output)
        except ValueError as e:
            raise HardwareIOError(f"Sensor {self.sensor_id} returned non-numeric output {output!r}") from e


class SensorMonitor:
    """Polls a sensor and feeds its moving average"""

    def __init__(self, sensor: Sensor, stop: StopSignal,
                 polling_rate: float = 0.2, window_size: int = 10):
        self.sensor = sensor
        self.stop = stop
        self.polling_rate = polling_rate
        self.window_size = window_size
        self._seeded = False

    def poll(self) -> None:
        """Take one reading and update the moving average"""
        try:
            value = self.sensor.get_value()
        except HardwareIOError as e:
            logger.warning(f"Failed to read sensor {self.sensor.get_id()}: {e}")
            return

        if not self._seeded:
            self.sensor.set_moving_avg(value)
            self._seeded = True
        else:
            avg = update_moving_avg(self.sensor.get_moving_avg(), self.window_size, value)
            self.sensor.set_moving_avg(avg)
        logger.debug(f"Sensor {self.sensor.get_id()}: {value} (avg {self.sensor.get_moving_avg():.1f})")

    def run(self) -> None:
        """Poll until stopped"""
        self.poll()
        while not self.stop.wait(self.polling_rate):
            self.poll()


def create_sensor(config) -> Sensor:
    """Create a sensor back-end from a SensorConfig

    Raises:
        ValueError: If the config names no back-end
    """
    if config.hwmon is not None:
        return HwMonSensor(config.id, index=config.hwmon.index,
                           path=config.hwmon.path, platform=config.hwmon.platform)
    if config.file is not None:
        return FileSensor(config.id, config.file.path)
    if config.cmd is not None:
        return CmdSensor(config.id, config.cmd.executable, config.cmd.args)
    raise ValueError(f"Sensor {config.id} has no back-end configured")
