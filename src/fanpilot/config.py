"""
Configuration Module

Loads the YAML configuration into dataclasses and validates it before
any fan controller starts. Validation catches every defect the
engine relies on never seeing at runtime: missing references, unknown
function operators and curve dependency cycles.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/fanpilot/config.yaml"
DEFAULT_DB_PATH = "/etc/fanpilot/fanpilot.db.yaml"

FUNCTION_SUM = "sum"
FUNCTION_DIFFERENCE = "difference"
FUNCTION_DELTA = "delta"
FUNCTION_MINIMUM = "minimum"
FUNCTION_MAXIMUM = "maximum"
FUNCTION_AVERAGE = "average"

FUNCTIONS = (
    FUNCTION_SUM,
    FUNCTION_DIFFERENCE,
    FUNCTION_DELTA,
    FUNCTION_MINIMUM,
    FUNCTION_MAXIMUM,
    FUNCTION_AVERAGE,
)

CONTROL_ALGORITHM_DIRECT = "direct"
CONTROL_ALGORITHM_PID = "pid"


@dataclass
class HwMonConfig:
    index: int = 1
    platform: Optional[str] = None
    path: Optional[str] = None


@dataclass
class FileConfig:
    path: str


@dataclass
class ExecConfig:
    executable: str
    args: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"exec": self.executable, "args": list(self.args)}


@dataclass
class CmdFanConfig:
    set_pwm: Optional[ExecConfig] = None
    get_pwm: Optional[ExecConfig] = None
    get_rpm: Optional[ExecConfig] = None


@dataclass
class SensorConfig:
    id: str
    hwmon: Optional[HwMonConfig] = None
    file: Optional[FileConfig] = None
    cmd: Optional[ExecConfig] = None


@dataclass
class LinearCurveConfig:
    sensor: str
    min: Optional[float] = None
    max: Optional[float] = None
    steps: Optional[Dict[float, float]] = None


@dataclass
class PidCurveConfig:
    sensor: str
    set_point: float
    p: float = 0.0
    i: float = 0.0
    d: float = 0.0


@dataclass
class FunctionCurveConfig:
    type: str
    curves: List[str] = field(default_factory=list)


@dataclass
class CurveConfig:
    id: str
    linear: Optional[LinearCurveConfig] = None
    pid: Optional[PidCurveConfig] = None
    function: Optional[FunctionCurveConfig] = None


@dataclass
class ControlAlgorithmConfig:
    kind: str = CONTROL_ALGORITHM_DIRECT
    max_pwm_change_per_cycle: Optional[float] = None
    p: float = 0.05
    i: float = 0.4
    d: float = 0.01


@dataclass
class FanConfig:
    id: str
    curve: str
    never_stop: bool = False
    min_pwm: Optional[int] = None
    start_pwm: Optional[int] = None
    max_pwm: Optional[int] = None
    pwm_map: Optional[Dict[int, int]] = None
    control_algorithm: ControlAlgorithmConfig = field(default_factory=ControlAlgorithmConfig)
    hwmon: Optional[HwMonConfig] = None
    file: Optional[FileConfig] = None
    cmd: Optional[CmdFanConfig] = None


@dataclass
class FanControllerConfig:
    adjustment_tick_rate: float = 0.2
    pwm_set_delay: float = 0.005


@dataclass
class Config:
    db_path: str = DEFAULT_DB_PATH
    run_fan_initialization_in_parallel: bool = True
    max_rpm_diff_for_settled_fan: float = 20
    fan_settle_timeout: float = 60
    fan_response_delay: float = 2
    temp_sensor_polling_rate: float = 0.2
    temp_rolling_window_size: int = 10
    rpm_polling_rate: float = 1
    rpm_rolling_window_size: int = 10
    controller_restart_delay: float = 10
    fan_controller: FanControllerConfig = field(default_factory=FanControllerConfig)
    sensors: List[SensorConfig] = field(default_factory=list)
    curves: List[CurveConfig] = field(default_factory=list)
    fans: List[FanConfig] = field(default_factory=list)


# Parsing

def _require(data: Dict[str, Any], key: str, where: str) -> Any:
    if key not in data or data[key] is None:
        raise ConfigurationError(f"{where}: missing required key '{key}'")
    return data[key]


def _as_mapping(data: Any, where: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError(f"{where}: expected a mapping, got {type(data).__name__}")
    return data


def _parse_hwmon(data: Any, where: str) -> HwMonConfig:
    data = _as_mapping(data, where)
    return HwMonConfig(index=int(data.get("index", 1)), platform=data.get("platform"), path=data.get("path"))


def _parse_file(data: Any, where: str) -> FileConfig:
    data = _as_mapping(data, where)
    return FileConfig(path=str(_require(data, "path", where)))


def _parse_exec(data: Any, where: str) -> Optional[ExecConfig]:
    if data is None:
        return None
    data = _as_mapping(data, where)
    args = data.get("args") or []
    return ExecConfig(executable=str(_require(data, "exec", where)), args=[str(arg) for arg in args])


def _parse_sensor(data: Any) -> SensorConfig:
    data = _as_mapping(data, "sensor")
    sensor_id = str(_require(data, "id", "sensor"))
    where = f"sensor {sensor_id}"
    return SensorConfig(
        id=sensor_id,
        hwmon=_parse_hwmon(data["hwmon"], where) if data.get("hwmon") is not None else None,
        file=_parse_file(data["file"], where) if data.get("file") is not None else None,
        cmd=_parse_exec(data.get("cmd"), where),
    )


def _parse_curve(data: Any) -> CurveConfig:
    data = _as_mapping(data, "curve")
    curve_id = str(_require(data, "id", "curve"))
    where = f"curve {curve_id}"
    curve = CurveConfig(id=curve_id)

    if data.get("linear") is not None:
        linear = _as_mapping(data["linear"], where)
        steps = linear.get("steps")
        curve.linear = LinearCurveConfig(
            sensor=str(_require(linear, "sensor", where)),
            min=linear.get("min"),
            max=linear.get("max"),
            steps={float(k): float(v) for k, v in _as_mapping(steps, where).items()} if steps else None,
        )

    if data.get("pid") is not None:
        pid = _as_mapping(data["pid"], where)
        curve.pid = PidCurveConfig(
            sensor=str(_require(pid, "sensor", where)),
            set_point=float(_require(pid, "set_point", where)),
            p=float(pid.get("p", 0.0)),
            i=float(pid.get("i", 0.0)),
            d=float(pid.get("d", 0.0)),
        )

    if data.get("function") is not None:
        function = _as_mapping(data["function"], where)
        curve.function = FunctionCurveConfig(
            type=str(_require(function, "type", where)),
            curves=[str(c) for c in function.get("curves") or []],
        )

    return curve


def _parse_control_algorithm(data: Any, where: str) -> ControlAlgorithmConfig:
    if data is None:
        return ControlAlgorithmConfig()
    if isinstance(data, str):
        return ControlAlgorithmConfig(kind=data)

    data = _as_mapping(data, where)
    if len(data) != 1:
        raise ConfigurationError(f"{where}: control_algorithm must name exactly one algorithm")
    kind, options = next(iter(data.items()))
    options = _as_mapping(options or {}, where)
    algorithm = ControlAlgorithmConfig(kind=str(kind))
    if "max_pwm_change_per_cycle" in options:
        algorithm.max_pwm_change_per_cycle = float(options["max_pwm_change_per_cycle"])
    for gain in ("p", "i", "d"):
        if gain in options:
            setattr(algorithm, gain, float(options[gain]))
    return algorithm


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _parse_fan(data: Any) -> FanConfig:
    data = _as_mapping(data, "fan")
    fan_id = str(_require(data, "id", "fan"))
    where = f"fan {fan_id}"

    cmd = None
    if data.get("cmd") is not None:
        cmd_data = _as_mapping(data["cmd"], where)
        cmd = CmdFanConfig(
            set_pwm=_parse_exec(cmd_data.get("set_pwm"), where),
            get_pwm=_parse_exec(cmd_data.get("get_pwm"), where),
            get_rpm=_parse_exec(cmd_data.get("get_rpm"), where),
        )

    pwm_map = data.get("pwm_map")
    return FanConfig(
        id=fan_id,
        curve=str(_require(data, "curve", where)),
        never_stop=bool(data.get("never_stop", False)),
        min_pwm=_optional_int(data.get("min_pwm")),
        start_pwm=_optional_int(data.get("start_pwm")),
        max_pwm=_optional_int(data.get("max_pwm")),
        pwm_map={int(k): int(v) for k, v in _as_mapping(pwm_map, where).items()} if pwm_map else None,
        control_algorithm=_parse_control_algorithm(data.get("control_algorithm"), where),
        hwmon=_parse_hwmon(data["hwmon"], where) if data.get("hwmon") is not None else None,
        file=_parse_file(data["file"], where) if data.get("file") is not None else None,
        cmd=cmd,
    )


def parse_config(data: Optional[Dict[str, Any]]) -> Config:
    """Build a Config from a parsed YAML document

    Raises:
        ConfigurationError: If the document is malformed
    """
    data = _as_mapping(data or {}, "config")
    config = Config()

    try:
        for key in ("db_path",):
            if key in data:
                setattr(config, key, str(data[key]))
        if "run_fan_initialization_in_parallel" in data:
            config.run_fan_initialization_in_parallel = bool(data["run_fan_initialization_in_parallel"])
        for key in ("max_rpm_diff_for_settled_fan", "fan_settle_timeout", "fan_response_delay",
                    "temp_sensor_polling_rate", "rpm_polling_rate", "controller_restart_delay"):
            if key in data:
                setattr(config, key, float(data[key]))
        for key in ("temp_rolling_window_size", "rpm_rolling_window_size"):
            if key in data:
                setattr(config, key, int(data[key]))

        controller = _as_mapping(data.get("fan_controller") or {}, "fan_controller")
        config.fan_controller = FanControllerConfig(
            adjustment_tick_rate=float(controller.get("adjustment_tick_rate", 0.2)),
            pwm_set_delay=float(controller.get("pwm_set_delay", 0.005)),
        )

        config.sensors = [_parse_sensor(s) for s in data.get("sensors") or []]
        config.curves = [_parse_curve(c) for c in data.get("curves") or []]
        config.fans = [_parse_fan(f) for f in data.get("fans") or []]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    return config


def load_config(path: str = DEFAULT_CONFIG_PATH, validate: bool = True) -> Config:
    """Load and validate a YAML configuration file

    Args:
        path: Path to configuration file
        validate: Run validate_config on the result

    Returns:
        Parsed configuration

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse configuration {path}: {e}") from e

    config = parse_config(data)
    if validate:
        validate_config(config)
    logger.info(f"Loaded configuration from {path}: {len(config.sensors)} sensors, "
                f"{len(config.curves)} curves, {len(config.fans)} fans")
    return config


# Validation

def _check_unique(ids: List[str], kind: str) -> None:
    seen = set()
    for item_id in ids:
        if item_id in seen:
            raise ConfigurationError(f"Duplicate {kind} id '{item_id}'")
        seen.add(item_id)


def _count_set(*values: Any) -> int:
    return sum(1 for value in values if value is not None)


def validate_sensors(config: Config) -> None:
    _check_unique([s.id for s in config.sensors], "sensor")
    for sensor in config.sensors:
        if _count_set(sensor.hwmon, sensor.file, sensor.cmd) != 1:
            raise ConfigurationError(f"Sensor {sensor.id}: exactly one of hwmon, file or cmd is required")
        if sensor.hwmon is not None and sensor.hwmon.path is None and sensor.hwmon.platform is None:
            raise ConfigurationError(f"Sensor {sensor.id}: hwmon needs a path or a platform")


def find_curve_cycles(curves: List[CurveConfig]) -> List[List[str]]:
    """Find dependency cycles between function curves

    Uses Tarjan's strongly connected components algorithm. Every
    component with more than one curve, and every curve referencing
    itself, is reported.

    Returns:
        List of cycles, each a list of curve ids
    """
    graph = {}
    for curve in curves:
        graph[curve.id] = list(curve.function.curves) if curve.function else []

    index_counter = [0]
    indices: Dict[str, int] = {}
    lowlinks: Dict[str, int] = {}
    stack: List[str] = []
    on_stack = set()
    cycles = []

    def strongconnect(node: str) -> None:
        indices[node] = index_counter[0]
        lowlinks[node] = index_counter[0]
        index_counter[0] += 1
        stack.append(node)
        on_stack.add(node)

        for successor in graph.get(node, []):
            if successor not in graph:
                continue
            if successor not in indices:
                strongconnect(successor)
                lowlinks[node] = min(lowlinks[node], lowlinks[successor])
            elif successor in on_stack:
                lowlinks[node] = min(lowlinks[node], indices[successor])

        if lowlinks[node] == indices[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1 or node in graph[node]:
                cycles.append(sorted(component))

    for node in graph:
        if node not in indices:
            strongconnect(node)

    return cycles


def validate_curves(config: Config) -> None:
    _check_unique([c.id for c in config.curves], "curve")
    curve_ids = {c.id for c in config.curves}
    sensor_ids = {s.id for s in config.sensors}

    for curve in config.curves:
        if _count_set(curve.linear, curve.pid, curve.function) != 1:
            raise ConfigurationError(f"Curve {curve.id}: exactly one of linear, pid or function is required")

        if curve.linear is not None:
            linear = curve.linear
            if linear.sensor not in sensor_ids:
                raise ConfigurationError(f"Curve {curve.id}: no sensor with id '{linear.sensor}'")
            if not linear.steps:
                if linear.min is None or linear.max is None:
                    raise ConfigurationError(f"Curve {curve.id}: linear curve needs steps or min and max")
                if linear.min >= linear.max:
                    raise ConfigurationError(f"Curve {curve.id}: min ({linear.min}) must be below max ({linear.max})")

        if curve.pid is not None:
            pid = curve.pid
            if pid.sensor not in sensor_ids:
                raise ConfigurationError(f"Curve {curve.id}: no sensor with id '{pid.sensor}'")
            if pid.p == 0 and pid.i == 0 and pid.d == 0:
                raise ConfigurationError(f"Curve {curve.id}: all PID constants are zero")

        if curve.function is not None:
            function = curve.function
            if function.type not in FUNCTIONS:
                raise ConfigurationError(f"Curve {curve.id}: unknown function '{function.type}'")
            if not function.curves:
                raise ConfigurationError(f"Curve {curve.id}: function needs at least one curve")
            for ref in function.curves:
                if ref == curve.id:
                    raise ConfigurationError(f"Curve {curve.id}: a curve must not reference itself")
                if ref not in curve_ids:
                    raise ConfigurationError(f"Curve {curve.id}: no curve with id '{ref}'")

    cycles = find_curve_cycles(config.curves)
    if cycles:
        raise ConfigurationError(f"Curve dependency cycle detected: {', '.join(' -> '.join(c) for c in cycles)}")


def validate_fans(config: Config) -> None:
    _check_unique([f.id for f in config.fans], "fan")
    curve_ids = {c.id for c in config.curves}

    for fan in config.fans:
        if _count_set(fan.hwmon, fan.file, fan.cmd) != 1:
            raise ConfigurationError(f"Fan {fan.id}: exactly one of hwmon, file or cmd is required")
        if fan.curve not in curve_ids:
            raise ConfigurationError(f"Fan {fan.id}: no curve with id '{fan.curve}'")
        if fan.hwmon is not None and fan.hwmon.path is None and fan.hwmon.platform is None:
            raise ConfigurationError(f"Fan {fan.id}: hwmon needs a path or a platform")
        if fan.cmd is not None and (fan.cmd.set_pwm is None or fan.cmd.get_pwm is None):
            raise ConfigurationError(f"Fan {fan.id}: cmd fans need set_pwm and get_pwm")

        algorithm = fan.control_algorithm
        if algorithm.kind not in (CONTROL_ALGORITHM_DIRECT, CONTROL_ALGORITHM_PID):
            raise ConfigurationError(f"Fan {fan.id}: unknown control algorithm '{algorithm.kind}'")

        for name in ("min_pwm", "start_pwm", "max_pwm"):
            value = getattr(fan, name)
            if value is not None and not 0 <= value <= 255:
                raise ConfigurationError(f"Fan {fan.id}: {name} {value} must be 0-255")
        if fan.min_pwm is not None and fan.max_pwm is not None and fan.min_pwm > fan.max_pwm:
            raise ConfigurationError(f"Fan {fan.id}: min_pwm ({fan.min_pwm}) cannot be greater than max_pwm ({fan.max_pwm})")


def validate_config(config: Config) -> None:
    """Validate a configuration

    Raises:
        ConfigurationError: On the first defect found
    """
    validate_sensors(config)
    validate_curves(config)
    validate_fans(config)
