"""Raspberry Pi backends: relays through gpiozero and an ADS1115 ADC over I2C."""

from __future__ import annotations

import logging
import time
from threading import RLock
from typing import Dict, Sequence

from gpiozero import DigitalOutputDevice
from gpiozero.exc import GPIOZeroError
from smbus2 import SMBus

from .ports import HardwareInitError, SensorReadError

logger = logging.getLogger("irrigation.hub.hardware")

ADS1115_REG_CONVERSION = 0x00
ADS1115_REG_CONFIG = 0x01
ADS1115_OS_SINGLE = 0x8000
ADS1115_MUX_SINGLE = (0x4000, 0x5000, 0x6000, 0x7000)  # AIN0..AIN3 against GND
ADS1115_PGA_6_144V = 0x0000  # gain 2/3
ADS1115_MODE_SINGLE = 0x0100
ADS1115_DR_128SPS = 0x0080
ADS1115_COMP_DISABLE = 0x0003
CONVERSION_WAIT_SECONDS = 0.009
CONVERSION_POLLS = 5


class GpioRelayBoard:
    """Relay outputs keyed by zone, each backed by a gpiozero ``DigitalOutputDevice``."""

    def __init__(self, pins: Sequence[int], *, active_high: bool = False) -> None:
        self._pins = list(pins)
        self._active_high = active_high
        self._devices: Dict[int, DigitalOutputDevice] = {}
        self._lock = RLock()

    def setup(self, zone: int) -> None:
        if zone < 0 or zone >= len(self._pins):
            raise HardwareInitError(f"no relay pin configured for zone {zone}")
        pin = self._pins[zone]
        try:
            device = DigitalOutputDevice(pin, active_high=self._active_high, initial_value=False)
        except (GPIOZeroError, OSError) as exc:
            raise HardwareInitError(f"failed to open GPIO{pin} for zone {zone}: {exc}") from exc
        with self._lock:
            self._devices[zone] = device
        logger.info("Relay for zone %d initialised on GPIO%d", zone, pin)

    def set_output(self, zone: int, on: bool) -> None:
        with self._lock:
            device = self._devices.get(zone)
        if device is None:
            raise HardwareInitError(f"relay for zone {zone} was not set up")
        if on:
            device.on()
        else:
            device.off()

    def release(self, zone: int) -> None:
        with self._lock:
            device = self._devices.pop(zone, None)
        if device is None:
            return
        try:
            device.off()
        finally:
            device.close()


class Ads1115Bus:
    """Single-shot reads from an ADS1115 at gain 2/3, returned as raw signed counts."""

    def __init__(self, *, bus: int = 1, address: int = 0x48) -> None:
        self._bus_number = bus
        self._address = address
        self._bus: SMBus | None = None
        self._lock = RLock()

    def open(self) -> None:
        try:
            self._bus = SMBus(self._bus_number)
        except OSError as exc:
            raise HardwareInitError(f"failed to open I2C bus {self._bus_number}: {exc}") from exc
        logger.info("ADS1115 opened on bus %d at 0x%02x", self._bus_number, self._address)

    def close(self) -> None:
        with self._lock:
            if self._bus is not None:
                self._bus.close()
                self._bus = None

    def read_raw(self, channel: int) -> float:
        if channel < 0 or channel >= len(ADS1115_MUX_SINGLE):
            raise SensorReadError(f"invalid ADS1115 channel {channel}")
        config = (
            ADS1115_OS_SINGLE
            | ADS1115_MUX_SINGLE[channel]
            | ADS1115_PGA_6_144V
            | ADS1115_MODE_SINGLE
            | ADS1115_DR_128SPS
            | ADS1115_COMP_DISABLE
        )
        with self._lock:
            if self._bus is None:
                raise SensorReadError("ADS1115 bus is not open")
            try:
                self._bus.write_i2c_block_data(
                    self._address,
                    ADS1115_REG_CONFIG,
                    [(config >> 8) & 0xFF, config & 0xFF],
                )
                for _ in range(CONVERSION_POLLS):
                    time.sleep(CONVERSION_WAIT_SECONDS)
                    status = self._bus.read_i2c_block_data(self._address, ADS1115_REG_CONFIG, 2)
                    if status[0] & 0x80:
                        break
                else:
                    raise SensorReadError(f"conversion on channel {channel} did not complete")
                high, low = self._bus.read_i2c_block_data(self._address, ADS1115_REG_CONVERSION, 2)
            except OSError as exc:
                raise SensorReadError(f"I2C read on channel {channel} failed: {exc}") from exc
        value = (high << 8) | low
        if value & 0x8000:
            value -= 1 << 16
        return float(value)


__all__ = ["Ads1115Bus", "GpioRelayBoard"]
