"""
Fan Control Errors

Exception hierarchy shared by the hardware back-ends, the fan
controllers and the configuration loader.
"""


class FanControlError(Exception):
    """Base exception for fan control errors"""
    pass


class HardwareIOError(FanControlError):
    """Raised when reading from or writing to a device fails"""
    pass


class VerificationMismatchError(HardwareIOError):
    """Raised when a write succeeded but the read-back disagrees"""
    pass


class CalibrationIncompleteError(FanControlError):
    """Raised when no usable fan curve could be measured"""
    pass


class NeverStopViolationError(FanControlError):
    """Raised when a never-stop fan does not spin even at its maximum PWM"""
    pass


class ConfigurationError(FanControlError):
    """Raised when the configuration is invalid"""
    pass
