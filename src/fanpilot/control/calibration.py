"""
Fan Calibration Module

This module measures how a fan responds to PWM values: the RPM it
reaches for each duty cycle, and the PWM value the hardware reports
back for each requested one.
"""

import logging
from typing import Dict, Optional

from ..errors import CalibrationIncompleteError, HardwareIOError
from ..hardware.fans import Fan, FanFeature
from .smoothing import RollingWindow
from .supervisor import StopSignal

logger = logging.getLogger(__name__)

SETTLE_WINDOW_SIZE = 10


class FanCalibrator:
    """Sweeps a fan across the PWM range and records its response"""

    def __init__(self, fan: Fan, stop: StopSignal,
                 pwm_set_delay: float = 0.005,
                 fan_response_delay: float = 2.0,
                 max_rpm_diff_for_settled_fan: float = 20,
                 settle_timeout: float = 60.0,
                 settle_sample_interval: float = 1.0):
        """Initialize fan calibrator

        Args:
            fan: Fan to calibrate
            stop: Signal aborting the calibration
            pwm_set_delay: Seconds to wait after each PWM write before reading it back
            fan_response_delay: Seconds to wait for the RPM to follow a small PWM step
            max_rpm_diff_for_settled_fan: RPM change below which the fan counts as settled
            settle_timeout: Upper bound in seconds for the initial settle wait
            settle_sample_interval: Seconds between RPM samples while settling
        """
        self.fan = fan
        self.stop = stop
        self.pwm_set_delay = pwm_set_delay
        self.fan_response_delay = fan_response_delay
        self.max_rpm_diff_for_settled_fan = max_rpm_diff_for_settled_fan
        self.settle_timeout = settle_timeout
        self.settle_sample_interval = settle_sample_interval

    def _sleep(self, seconds: float) -> None:
        if self.stop.wait(seconds):
            raise CalibrationIncompleteError(f"Calibration of fan {self.fan.get_id()} interrupted")

    def _read_rpm(self) -> Optional[int]:
        try:
            return self.fan.get_rpm()
        except HardwareIOError as e:
            logger.warning(f"Fan {self.fan.get_id()}: failed to read RPM while settling: {e}")
            return None

    def wait_for_fan_to_settle(self) -> bool:
        """Wait until consecutive RPM readings stop changing

        The fan counts as settled once the largest of the last
        SETTLE_WINDOW_SIZE RPM deltas is below the threshold. Failed
        readings are skipped.

        Returns:
            True if the fan settled before the timeout
        """
        threshold = self.max_rpm_diff_for_settled_fan
        window = RollingWindow(SETTLE_WINDOW_SIZE)
        window.fill(2 * threshold)

        last_rpm = self._read_rpm()
        elapsed = 0.0
        while window.max() >= threshold:
            if elapsed >= self.settle_timeout:
                logger.warning(f"Fan {self.fan.get_id()} did not settle within {self.settle_timeout}s")
                return False
            self._sleep(self.settle_sample_interval)
            elapsed += max(self.settle_sample_interval, 1e-3)

            rpm = self._read_rpm()
            if rpm is None:
                continue
            if last_rpm is not None:
                window.append(abs(rpm - last_rpm))
            last_rpm = rpm
            logger.debug(f"Waiting for fan {self.fan.get_id()} to settle: rpm {rpm}, max delta {window.max()}")

        logger.debug(f"Fan {self.fan.get_id()} settled at {last_rpm} RPM")
        return True

    def measure_rpm_curve(self) -> Dict[int, float]:
        """Record the RPM reached at every PWM value the fan honors

        Returns:
            Mapping of PWM value to measured RPM

        Raises:
            CalibrationIncompleteError: If interrupted or nothing could be measured
            HardwareIOError: If the fan cannot be accessed
        """
        fan_id = self.fan.get_id()
        logger.info(f"Measuring RPM curve of fan {fan_id}, this may take a while")

        verify = self.fan.supports(FanFeature.PWM_SENSOR)
        data: Dict[int, float] = {}
        settled = False

        for pwm in range(256):
            self.fan.set_pwm(pwm)
            self._sleep(self.pwm_set_delay)

            if verify:
                actual = self.fan.get_pwm()
                if actual != pwm:
                    logger.debug(f"Fan {fan_id}: requested PWM {pwm}, hardware reports {actual}, skipping")
                    continue

            if not settled:
                # The fan may start from anywhere, give it time to reach a steady state
                self.wait_for_fan_to_settle()
                settled = True
            else:
                self._sleep(self.fan_response_delay)

            rpm = self.fan.get_rpm()
            data[pwm] = float(rpm)
            logger.debug(f"Fan {fan_id}: PWM {pwm} -> {rpm} RPM")

            if pwm % 32 == 0:
                logger.info(f"Calibrating fan {fan_id}: {pwm * 100 // 255}%")

        if not data:
            raise CalibrationIncompleteError(f"Fan {fan_id} did not accept any PWM value")

        logger.info(f"Measured {len(data)} calibration points for fan {fan_id}")
        return data

    def measure_pwm_map(self) -> Dict[int, int]:
        """Record the PWM value reported back for every requested value

        Fans without PWM read-back get the identity table.

        Raises:
            CalibrationIncompleteError: If interrupted
            HardwareIOError: If the fan cannot be accessed
        """
        if not self.fan.supports(FanFeature.PWM_SENSOR):
            return {pwm: pwm for pwm in range(256)}

        pwm_map = {}
        for pwm in range(256):
            self.fan.set_pwm(pwm)
            self._sleep(self.pwm_set_delay)
            pwm_map[pwm] = self.fan.get_pwm()

        logger.debug(f"Measured PWM map of fan {self.fan.get_id()}")
        return pwm_map
