"""
Hardware Access Helpers

Integer file I/O for sysfs style attributes, hwmon device lookup and
discovery, and bounded external command execution.
"""

import glob
import logging
import os
import re
import subprocess
import time
from typing import Any, Dict, List, Optional

from ..errors import HardwareIOError

logger = logging.getLogger(__name__)

HWMON_BASE_PATH = "/sys/class/hwmon"
DEFAULT_COMMAND_TIMEOUT = 2.0


def read_int_from_file(path: str) -> int:
    """Read a single integer from a file

    Raises:
        HardwareIOError: If the file cannot be read or does not hold an integer
    """
    try:
        with open(path) as f:
            return int(f.read().strip())
    except (OSError, ValueError) as e:
        raise HardwareIOError(f"Failed to read integer from {path}: {e}") from e


def write_int_to_file(value: int, path: str) -> None:
    """Write a single integer to a file

    Raises:
        HardwareIOError: If the file cannot be written
    """
    try:
        with open(path, "w") as f:
            f.write(str(int(value)))
    except OSError as e:
        raise HardwareIOError(f"Failed to write {value} to {path}: {e}") from e


def find_hwmon_device(platform: str, base_path: Optional[str] = None) -> str:
    """Find the hwmon directory whose name matches a platform pattern

    Args:
        platform: Regular expression matched against each device's name file
        base_path: Directory holding the hwmon devices, /sys/class/hwmon if None

    Returns:
        Path of the first matching hwmon directory

    Raises:
        HardwareIOError: If no device matches
    """
    pattern = re.compile(platform)
    base_path = base_path or HWMON_BASE_PATH
    for device in sorted(glob.glob(os.path.join(base_path, "hwmon*"))):
        try:
            with open(os.path.join(device, "name")) as f:
                name = f.read().strip()
        except OSError:
            continue
        if pattern.search(name):
            logger.debug(f"Matched hwmon platform {platform} to {device} ({name})")
            return device

    raise HardwareIOError(f"No hwmon device found for platform {platform}")


def _attribute_indexes(device: str, pattern: str) -> List[int]:
    regex = re.compile(pattern)
    indexes = []
    for entry in os.listdir(device):
        match = regex.fullmatch(entry)
        if match:
            indexes.append(int(match.group(1)))
    return sorted(indexes)


def detect_hwmon_devices(base_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """List hwmon devices with their fan and temperature attributes

    Args:
        base_path: Directory holding the hwmon devices, /sys/class/hwmon if None

    Returns:
        One dict per device with its name, path, the indexes of its pwmN
        attributes (fans) and of its tempN_input attributes (sensors)
    """
    base_path = base_path or HWMON_BASE_PATH
    devices = []
    for device in sorted(glob.glob(os.path.join(base_path, "hwmon*"))):
        try:
            with open(os.path.join(device, "name")) as f:
                name = f.read().strip()
            fans = _attribute_indexes(device, r"pwm(\d+)")
            sensors = _attribute_indexes(device, r"temp(\d+)_input")
        except OSError as e:
            logger.debug(f"Skipping hwmon device {device}: {e}")
            continue
        devices.append({"name": name, "path": device, "fans": fans, "sensors": sensors})
    return devices


def safe_cmd_execution(executable: str, args: Optional[List[str]] = None,
                       timeout: float = DEFAULT_COMMAND_TIMEOUT,
                       retries: int = 1, retry_delay: float = 0.5) -> str:
    """Execute an external command and return its output

    Args:
        executable: Path of the program to run
        args: Program arguments
        timeout: Seconds before the command is killed
        retries: Number of attempts
        retry_delay: Delay between attempts in seconds

    Returns:
        Stripped standard output

    Raises:
        HardwareIOError: If the command fails, times out or cannot be started
    """
    command = [executable] + list(args or [])

    last_error = None
    for attempt in range(retries):
        if attempt > 0:
            time.sleep(retry_delay)
            logger.debug(f"Retrying command {executable} (attempt {attempt + 1}/{retries})")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout
            )
            return result.stdout.strip()
        except subprocess.TimeoutExpired as e:
            last_error = HardwareIOError(f"Command {executable} timed out after {timeout}s")
            last_error.__cause__ = e
        except subprocess.CalledProcessError as e:
            last_error = HardwareIOError(
                f"Command {executable} failed with code {e.returncode}: {e.stderr.strip() if e.stderr else ''}"
            )
            last_error.__cause__ = e
        except OSError as e:
            last_error = HardwareIOError(f"Failed to execute {executable}: {e}")
            last_error.__cause__ = e

        logger.warning(f"{last_error}")

    raise last_error
