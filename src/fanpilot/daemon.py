"""
Fan Daemon Module

Builds sensors, curves and fan controllers from the configuration and
runs them in background threads until stopped. Every fan runs in
isolation; a failing fan never stops another.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from .config import CONTROL_ALGORITHM_PID, Config, ControlAlgorithmConfig
from .control.controller import ControllerSettings, FanController
from .control.curve import create_curve
from .control.loops import ControlLoop, DirectControlLoop, PidControlLoop
from .control.registry import Registry
from .control.supervisor import StopSignal
from .errors import CalibrationIncompleteError, ConfigurationError, FanControlError
from .hardware.fans import create_fan
from .hardware.sensors import SensorMonitor, create_sensor
from .persistence import Persistence, YamlPersistence

logger = logging.getLogger(__name__)


def create_control_loop(algorithm: ControlAlgorithmConfig) -> ControlLoop:
    if algorithm.kind == CONTROL_ALGORITHM_PID:
        return PidControlLoop(algorithm.p, algorithm.i, algorithm.d)
    return DirectControlLoop(algorithm.max_pwm_change_per_cycle)


class FanDaemon:
    """Runs sensor monitors and fan controllers"""

    def __init__(self, config: Config, persistence: Optional[Persistence] = None,
                 stop: Optional[StopSignal] = None):
        """Initialize fan daemon

        Args:
            config: Validated configuration
            persistence: Calibration storage, a YAML file at config.db_path if None
            stop: Signal shutting the daemon down
        """
        self.config = config
        self.persistence = persistence or YamlPersistence(config.db_path)
        self.stop = stop or StopSignal()

        self.sensors = Registry("sensor")
        self.curves = Registry("curve")
        self.monitors: List[SensorMonitor] = []
        self.controllers: Dict[str, FanController] = {}
        self._threads: List[threading.Thread] = []

    def setup(self) -> None:
        """Create all sensors, curves and fan controllers

        Raises:
            ConfigurationError: If a component cannot be created
        """
        try:
            for sensor_config in self.config.sensors:
                sensor = create_sensor(sensor_config)
                self.sensors.register(sensor)
                self.monitors.append(SensorMonitor(
                    sensor, self.stop,
                    polling_rate=self.config.temp_sensor_polling_rate,
                    window_size=self.config.temp_rolling_window_size
                ))

            for curve_config in self.config.curves:
                self.curves.register(create_curve(curve_config, self.sensors, self.curves))

            init_lock = None if self.config.run_fan_initialization_in_parallel else threading.Lock()
            settings = ControllerSettings.from_config(self.config, init_lock=init_lock)

            for fan_config in self.config.fans:
                fan = create_fan(fan_config)
                self.controllers[fan.get_id()] = FanController(
                    fan, self.curves, self.persistence, self.stop,
                    control_loop=create_control_loop(fan_config.control_algorithm),
                    settings=settings
                )
        except FanControlError as e:
            raise ConfigurationError(f"Failed to set up fan control: {e}") from e
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        logger.info(f"Set up {len(self.monitors)} sensors, {len(self.curves)} curves "
                    f"and {len(self.controllers)} fans")

    def _run_fan(self, controller: FanController) -> None:
        fan_id = controller.fan_id
        while not self.stop.is_set():
            try:
                controller.run()
            except (CalibrationIncompleteError, ConfigurationError) as e:
                logger.error(f"Fan {fan_id} disabled: {e}")
                return
            except FanControlError as e:
                logger.error(f"Fan {fan_id} controller failed: {e}")

            if self.stop.wait(self.config.controller_restart_delay):
                return
            logger.info(f"Restarting controller of fan {fan_id}")

    def _start_thread(self, name: str, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def start(self) -> None:
        """Start all monitors and controllers in background threads"""
        self.persistence.init()
        for monitor in self.monitors:
            self._start_thread(f"sensor-{monitor.sensor.get_id()}", monitor.run)
        for fan_id, controller in self.controllers.items():
            self._start_thread(f"fan-{fan_id}", self._run_fan, controller)
        logger.info("Fan daemon started")

    def wait(self) -> None:
        """Block until the daemon is stopped and all threads exited"""
        self.stop.wait()
        self.join()

    def join(self, timeout: Optional[float] = 10.0) -> None:
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop in time")

    def shutdown(self) -> None:
        """Stop all threads, restoring every fan"""
        self.stop.set()
        self.join()
        logger.info("Fan daemon stopped")

    def get_status(self) -> Dict[str, Any]:
        """Get a snapshot of all sensors and fans"""
        return {
            "running": not self.stop.is_set(),
            "sensors": {s.get_id(): s.get_moving_avg() for s in self.sensors.values()},
            "curves": {c.get_id(): c.current_value() for c in self.curves.values()},
            "fans": {fan_id: c.snapshot() for fan_id, c in self.controllers.items()},
        }
