"""
Control package for fanpilot

This package provides the fan control engine: smoothing helpers,
control loops, speed curves, calibration and the per-fan controller.
"""

from .controller import ControllerState, FanController, compute_pwm_boundaries
from .curve import FunctionSpeedCurve, LinearSpeedCurve, PidSpeedCurve, SpeedCurve
from .loops import DirectControlLoop, PidControlLoop, PidLoop
from .registry import Registry

__all__ = [
    'ControllerState',
    'FanController',
    'compute_pwm_boundaries',
    'SpeedCurve',
    'LinearSpeedCurve',
    'PidSpeedCurve',
    'FunctionSpeedCurve',
    'DirectControlLoop',
    'PidControlLoop',
    'PidLoop',
    'Registry'
]
