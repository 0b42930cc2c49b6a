"""
Hardware package for fanpilot

This package provides the fan and temperature sensor back-ends.
"""

from .fans import CmdFan, ControlMode, Fan, FanFeature, FileFan, HwMonFan
from .sensors import CmdSensor, FileSensor, HwMonSensor, Sensor, SensorMonitor

__all__ = [
    'Fan',
    'FanFeature',
    'ControlMode',
    'HwMonFan',
    'FileFan',
    'CmdFan',
    'Sensor',
    'HwMonSensor',
    'FileSensor',
    'CmdSensor',
    'SensorMonitor'
]
