"""
Command Line Interface Module

This module provides the command-line interface for running the fan
daemon, validating configurations and monitoring fans.
"""

import argparse
import curses
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from ..config import DEFAULT_CONFIG_PATH, DEFAULT_DB_PATH, Config, load_config
from ..control.controller import compute_pwm_boundaries
from ..daemon import FanDaemon
from ..errors import ConfigurationError, FanControlError, HardwareIOError
from ..hardware.fans import FanFeature, create_fan
from ..hardware.util import detect_hwmon_devices, read_int_from_file
from ..persistence import YamlPersistence

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MONITOR_INTERVAL = 1.0

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent.parent.parent / "config" / "default.yaml"

# Used when the packaged example configuration is not available
DEFAULT_CONFIG = {
    "db_path": DEFAULT_DB_PATH,
    "run_fan_initialization_in_parallel": True,
    "max_rpm_diff_for_settled_fan": 20,
    "fan_settle_timeout": 60,
    "fan_response_delay": 2,
    "temp_sensor_polling_rate": 0.2,
    "temp_rolling_window_size": 10,
    "rpm_polling_rate": 1,
    "rpm_rolling_window_size": 10,
    "controller_restart_delay": 10,
    "fan_controller": {
        "adjustment_tick_rate": 0.2,
        "pwm_set_delay": 0.005
    },
    "sensors": [
        {"id": "cpu_package", "hwmon": {"platform": "coretemp", "index": 1}}
    ],
    "curves": [
        {"id": "cpu_curve", "linear": {"sensor": "cpu_package", "min": 40, "max": 80}}
    ],
    "fans": [
        {
            "id": "cpu_fan",
            "curve": "cpu_curve",
            "never_stop": True,
            "hwmon": {"platform": "nct67", "index": 1}
        }
    ]
}


class CLI:
    """Command-line interface handler"""

    def __init__(self):
        """Initialize CLI handler"""
        self.parser = self._create_parser()
        self.daemon: Optional[FanDaemon] = None
        self.pid_file = "/var/run/fanpilot.pid"

    def _check_running(self) -> bool:
        """Check if another instance is running

        Returns:
            True if another instance is running
        """
        if os.path.exists(self.pid_file):
            try:
                with open(self.pid_file) as f:
                    pid = int(f.read())
                os.kill(pid, 0)
                return True
            except (OSError, ValueError):
                # Stale PID file
                os.remove(self.pid_file)
        return False

    def _create_pid_file(self) -> None:
        with open(self.pid_file, "w") as f:
            f.write(str(os.getpid()))

    def _remove_pid_file(self) -> None:
        if os.path.exists(self.pid_file):
            os.remove(self.pid_file)

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create command-line argument parser

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            description="fanpilot - temperature driven fan control daemon"
        )

        parser.add_argument(
            "-c", "--config",
            help="Path to configuration file",
            default=DEFAULT_CONFIG_PATH
        )

        parser.add_argument(
            "--debug",
            action="store_true",
            help="Enable debug logging"
        )

        parser.add_argument(
            "--validate",
            action="store_true",
            help="Validate the configuration and exit"
        )

        parser.add_argument(
            "--reset",
            metavar="FAN_ID",
            help="Delete the stored calibration data of a fan and exit"
        )

        parser.add_argument(
            "--monitor",
            action="store_true",
            help="Show live fan status while controlling"
        )

        parser.add_argument(
            "--detect",
            action="store_true",
            help="List hwmon devices with their fans and sensors and exit"
        )

        parser.add_argument(
            "--fans",
            action="store_true",
            help="Show PWM, RPM, mode and calibration of the configured fans and exit"
        )

        parser.add_argument(
            "--curves",
            action="store_true",
            help="Show the current value of every configured curve and exit"
        )

        return parser

    def _setup_config(self, config_path: str) -> str:
        """Create a default configuration file if none exists

        Returns:
            Path to active configuration file
        """
        if not os.path.exists(config_path):
            directory = os.path.dirname(config_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            if DEFAULT_CONFIG_FILE.exists():
                with open(DEFAULT_CONFIG_FILE) as src, open(config_path, "w") as dst:
                    dst.write(src.read())
            else:
                with open(config_path, "w") as f:
                    yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)
            logger.info(f"Created default configuration at {config_path}")
        return config_path

    @staticmethod
    def _read(getter: Callable[[], Any]) -> str:
        try:
            return str(getter())
        except HardwareIOError:
            return "n/a"

    @classmethod
    def format_detect(cls, devices: List[Dict[str, Any]]) -> List[str]:
        """Render detected hwmon devices with their current readings"""
        lines = []
        for device in devices:
            path = device["path"]
            lines.append(f"{device['name']} ({path})")
            for index in device["fans"]:
                pwm = cls._read(lambda: read_int_from_file(os.path.join(path, f"pwm{index}")))
                rpm = cls._read(lambda: read_int_from_file(os.path.join(path, f"fan{index}_input")))
                mode = cls._read(lambda: read_int_from_file(os.path.join(path, f"pwm{index}_enable")))
                lines.append(f"  fan {index}: pwm {pwm}, rpm {rpm}, mode {mode}")
            for index in device["sensors"]:
                value = cls._read(lambda: read_int_from_file(os.path.join(path, f"temp{index}_input")) / 1000)
                lines.append(f"  sensor {index}: {value}C")
        if not lines:
            lines.append("No hwmon devices found")
        return lines

    @classmethod
    def inspect_fans(cls, config: Config) -> List[str]:
        """Render the current state and stored calibration of every configured fan"""
        persistence = YamlPersistence(config.db_path)
        lines = [f"{'Fan':<16} {'PWM':>5} {'RPM':>8} {'Mode':>5}  Calibration"]
        for fan_config in config.fans:
            try:
                fan = create_fan(fan_config)
            except (FanControlError, ValueError) as e:
                lines.append(f"{fan_config.id:<16} unavailable: {e}")
                continue

            pwm = cls._read(fan.get_pwm) if fan.supports(FanFeature.PWM_SENSOR) else "-"
            rpm = cls._read(fan.get_rpm) if fan.supports(FanFeature.RPM_SENSOR) else "-"
            mode = cls._read(fan.get_pwm_enabled) if fan.supports(FanFeature.CONTROL_MODE) else "-"

            data = persistence.load_fan_pwm_data(fan.get_id())
            if data:
                start_pwm, max_pwm = compute_pwm_boundaries(data, fan.start_pwm)
                calibration = f"{len(data)} points, start PWM {start_pwm}, max PWM {max_pwm}"
            else:
                calibration = "not calibrated"
            lines.append(f"{fan.get_id():<16} {pwm:>5} {rpm:>8} {mode:>5}  {calibration}")
        return lines

    @staticmethod
    def list_curves(config: Config) -> List[str]:
        """Render the value every configured curve has for the current temperatures

        Raises:
            ConfigurationError: If a sensor or curve cannot be created
        """
        daemon = FanDaemon(config)
        daemon.setup()
        for monitor in daemon.monitors:
            monitor.poll()

        lines = [f"{'Curve':<16} {'Value':>5}"]
        for curve_id in daemon.curves.ids():
            value = daemon.curves.get(curve_id).evaluate()
            lines.append(f"{curve_id:<16} {value:>5}")
        return lines

    @staticmethod
    def format_status(status: Dict[str, Any]) -> List[str]:
        """Render daemon status as text lines"""
        lines = [f"{'Fan':<16} {'State':<12} {'PWM':>5} {'Min':>5} {'Max':>5} {'RPM':>8}"]
        for fan_id, snapshot in sorted(status["fans"].items()):
            pwm = "-" if snapshot.last_set_pwm is None else str(snapshot.last_set_pwm)
            lines.append(f"{fan_id:<16} {snapshot.state.value:<12} {pwm:>5} "
                         f"{snapshot.min_pwm:>5} {snapshot.max_pwm:>5} {snapshot.rpm_avg:>8.0f}")
        lines.append("")
        lines.append(f"{'Sensor':<16} {'Temp':>8}")
        for sensor_id, avg in sorted(status["sensors"].items()):
            lines.append(f"{sensor_id:<16} {avg / 1000:>7.1f}C")
        return lines

    def _monitor_display(self, stdscr) -> None:
        """Display fan status until stopped or 'q' is pressed

        Args:
            stdscr: Curses window object
        """
        curses.curs_set(0)
        stdscr.nodelay(True)

        while not self.daemon.stop.is_set():
            try:
                stdscr.erase()
                max_y, max_x = stdscr.getmaxyx()
                lines = ["fanpilot - press q to quit", ""] + self.format_status(self.daemon.get_status())
                for y, line in enumerate(lines[:max_y - 1]):
                    stdscr.addstr(y, 0, line[:max_x - 1])
                stdscr.refresh()
            except curses.error:
                # Terminal too small or resized
                pass

            if stdscr.getch() in (ord("q"), ord("Q")):
                self.daemon.stop.set()
                break
            self.daemon.stop.wait(MONITOR_INTERVAL)

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run the CLI interface

        Returns:
            Process exit code
        """
        args = self.parser.parse_args(argv)

        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        if args.debug:
            logging.getLogger("fanpilot").setLevel(logging.DEBUG)

        if args.detect:
            print("\n".join(self.format_detect(detect_hwmon_devices())))
            return 0

        created_pid_file = False
        try:
            config_path = self._setup_config(args.config)
            config = load_config(config_path)

            if args.validate:
                print(f"Configuration {config_path} is valid")
                return 0

            if args.fans:
                print("\n".join(self.inspect_fans(config)))
                return 0

            if args.curves:
                print("\n".join(self.list_curves(config)))
                return 0

            if args.reset:
                persistence = YamlPersistence(config.db_path)
                persistence.delete_fan_pwm_data(args.reset)
                persistence.delete_fan_pwm_map(args.reset)
                print(f"Deleted calibration data of fan {args.reset}")
                return 0

            if self._check_running():
                print("Another instance of fanpilot is running")
                return 1
            self._create_pid_file()
            created_pid_file = True

            self.daemon = FanDaemon(config)
            self.daemon.setup()

            def signal_handler(signum, frame):
                logger.info(f"Received signal {signum}, shutting down")
                self.daemon.stop.set()
            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGTERM, signal_handler)

            self.daemon.start()
            if args.monitor:
                curses.wrapper(self._monitor_display)
            self.daemon.wait()
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 1

        finally:
            if self.daemon is not None:
                self.daemon.shutdown()
            if created_pid_file:
                self._remove_pid_file()


def main() -> None:
    """Main entry point"""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
