# garage/server/actuator.py
"""
Physical trigger drivers. Each one runs the same two-step pulse:
drive the output to its active level, wait, release it, wait.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import serial
from serial import SerialException
from gpiozero import GPIOZeroError, OutputDevice

from garage.core.config import ActuatorConfig
from garage.core.errors import ActuatorError, ConfigError


class LogActuator:
    """Non-hardware actuator: records and logs each trigger."""

    def __init__(self, *, logger: Optional[logging.Logger] = None):
        self._log = logger or logging.getLogger(__name__)
        self.count = 0

    def trigger(self) -> None:
        self.count += 1
        self._log.info("TOGGLE_DOOR count=%d", self.count)

    def close(self) -> None:
        return None


class GpioActuator:
    """
    Relay on a GPIO pin (BCM numbering). The pin idles high; a trigger pulls it
    low for pulse_s, then restores it and waits pulse_s again.
    """

    def __init__(
        self,
        pin: int = 17,
        *,
        pulse_s: float = 0.3,
        pin_factory=None,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.pin = int(pin)
        self.pulse_s = float(pulse_s)
        self._sleep = sleep
        self._log = logger or logging.getLogger(__name__)
        try:
            self._device = OutputDevice(self.pin, initial_value=True, pin_factory=pin_factory)
        except GPIOZeroError as e:
            raise ActuatorError(f"Could not open GPIO{self.pin}.", hint=str(e)) from None

    @property
    def device(self) -> OutputDevice:
        return self._device

    def trigger(self) -> None:
        try:
            self._device.off()
            self._sleep(self.pulse_s)
            self._device.on()
            self._sleep(self.pulse_s)
        except GPIOZeroError as e:
            raise ActuatorError(f"GPIO{self.pin} pulse failed.", hint=str(e)) from None
        self._log.info("GPIO_PULSE pin=%d pulse_s=%.3f", self.pin, self.pulse_s)

    def close(self) -> None:
        self._device.close()


class SerialLineActuator:
    """
    USB relay boards wired to a serial adapter's RTS line (pyserial).
    RTS is asserted for pulse_s, then released.
    """

    def __init__(
        self,
        port: str,
        *,
        pulse_s: float = 0.3,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.port = port
        self.pulse_s = float(pulse_s)
        self._sleep = sleep
        self._log = logger or logging.getLogger(__name__)
        try:
            self.ser: Optional[serial.Serial] = serial.Serial(port)
            self.ser.rts = False
        except SerialException as e:
            self.ser = None
            raise ActuatorError(f"Could not open serial port {port}.", hint=str(e)) from None

    def trigger(self) -> None:
        if self.ser is None:
            raise ActuatorError("trigger while serial port not open")
        try:
            self.ser.rts = True
            self._sleep(self.pulse_s)
            self.ser.rts = False
            self._sleep(self.pulse_s)
        except SerialException as e:
            raise ActuatorError(f"RTS pulse on {self.port} failed.", hint=str(e)) from None
        self._log.info("RTS_PULSE port=%s pulse_s=%.3f", self.port, self.pulse_s)

    def close(self) -> None:
        if self.ser is not None:
            try:
                self.ser.close()
            finally:
                self.ser = None


def create_actuator(cfg: ActuatorConfig, *, logger: Optional[logging.Logger] = None):
    if cfg.driver == "log":
        return LogActuator(logger=logger)
    if cfg.driver == "gpio":
        return GpioActuator(cfg.pin, pulse_s=cfg.pulse_s, logger=logger)
    if cfg.driver == "serial":
        return SerialLineActuator(cfg.serial_port, pulse_s=cfg.pulse_s, logger=logger)
    raise ConfigError(f"Unknown actuator driver '{cfg.driver}'.")
