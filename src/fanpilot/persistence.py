"""
Calibration Persistence Module

Stores each fan's measured PWM to RPM curve and its PWM quantization
table so calibration only has to run once per fan.
"""

import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

PWM_DATA_SECTION = "fan_pwm_data"
PWM_MAP_SECTION = "fan_pwm_map"


class Persistence:
    """Storage interface for per-fan calibration data"""

    def init(self) -> None:
        pass

    def load_fan_pwm_data(self, fan_id: str) -> Optional[Dict[int, float]]:
        raise NotImplementedError

    def save_fan_pwm_data(self, fan_id: str, data: Dict[int, float]) -> None:
        raise NotImplementedError

    def delete_fan_pwm_data(self, fan_id: str) -> None:
        raise NotImplementedError

    def load_fan_pwm_map(self, fan_id: str) -> Optional[Dict[int, int]]:
        raise NotImplementedError

    def save_fan_pwm_map(self, fan_id: str, pwm_map: Dict[int, int]) -> None:
        raise NotImplementedError

    def delete_fan_pwm_map(self, fan_id: str) -> None:
        raise NotImplementedError


def _convert_pwm_data(entry: Any) -> Dict[int, float]:
    return {int(k): float(v) for k, v in entry.items()}


def _convert_pwm_map(entry: Any) -> Dict[int, int]:
    result = {int(k): int(v) for k, v in entry.items()}
    for key in result:
        if not 0 <= key <= 255:
            raise ValueError(f"PWM key {key} out of range")
    return result


class YamlPersistence(Persistence):
    """Persistence backed by a single YAML document"""

    def __init__(self, path: str):
        """Initialize YAML persistence

        Args:
            path: Path to the YAML database file
        """
        self.path = path
        self._lock = threading.Lock()

    def init(self) -> None:
        """Create the database file if it does not exist"""
        with self._lock:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            if not os.path.exists(self.path):
                self._write({})
                logger.info(f"Created calibration database at {self.path}")

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path) as f:
                document = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to read calibration database {self.path}: {e}")
            return {}
        if document is None:
            return {}
        if not isinstance(document, dict):
            logger.warning(f"Ignoring malformed calibration database {self.path}")
            return {}
        return document

    def _write(self, document: Dict[str, Any]) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            yaml.safe_dump(document, f, default_flow_style=False)
        os.replace(tmp_path, self.path)

    def _load(self, section: str, fan_id: str, convert: Callable[[Any], Dict]) -> Optional[Dict]:
        with self._lock:
            document = self._read()
            entry = (document.get(section) or {}).get(fan_id)
            if entry is None:
                return None
            try:
                return convert(entry)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Deleting corrupt {section} entry for fan {fan_id}: {e}")
                del document[section][fan_id]
                self._write(document)
                return None

    def _save(self, section: str, fan_id: str, data: Dict) -> None:
        with self._lock:
            document = self._read()
            document.setdefault(section, {})[fan_id] = data
            self._write(document)

    def _delete(self, section: str, fan_id: str) -> None:
        with self._lock:
            document = self._read()
            if fan_id in (document.get(section) or {}):
                del document[section][fan_id]
                self._write(document)

    def load_fan_pwm_data(self, fan_id: str) -> Optional[Dict[int, float]]:
        return self._load(PWM_DATA_SECTION, fan_id, _convert_pwm_data)

    def save_fan_pwm_data(self, fan_id: str, data: Dict[int, float]) -> None:
        self._save(PWM_DATA_SECTION, fan_id, {int(k): float(v) for k, v in data.items()})
        logger.debug(f"Saved {len(data)} calibration points for fan {fan_id}")

    def delete_fan_pwm_data(self, fan_id: str) -> None:
        self._delete(PWM_DATA_SECTION, fan_id)

    def load_fan_pwm_map(self, fan_id: str) -> Optional[Dict[int, int]]:
        return self._load(PWM_MAP_SECTION, fan_id, _convert_pwm_map)

    def save_fan_pwm_map(self, fan_id: str, pwm_map: Dict[int, int]) -> None:
        self._save(PWM_MAP_SECTION, fan_id, {int(k): int(v) for k, v in pwm_map.items()})

    def delete_fan_pwm_map(self, fan_id: str) -> None:
        self._delete(PWM_MAP_SECTION, fan_id)
