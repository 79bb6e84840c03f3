"""Relay and analog I/O ports used by the irrigation core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Tuple

from .ports import AnalogPort, HardwareError, HardwareInitError, RelayPort, SensorReadError
from .simulated import SimulatedAnalogBus, SimulatedRelayBoard

if TYPE_CHECKING:  # pragma: no cover
    from config import Settings


def build_ports(settings: "Settings") -> Tuple[RelayPort, AnalogPort]:
    """Return the relay and analog ports for the configured backend."""
    if settings.hardware_backend == "gpio":
        from .gpio import Ads1115Bus, GpioRelayBoard

        relays = GpioRelayBoard(settings.relay_pins, active_high=settings.relay_active_high)
        analog = Ads1115Bus(bus=settings.adc_i2c_bus, address=settings.adc_address)
        return relays, analog
    # Simulated soil sits in the "moist" band so a dev hub never waters on its own.
    baseline = {channel: 16_000.0 for channel in settings.adc_channels}
    return SimulatedRelayBoard(), SimulatedAnalogBus(baseline, jitter=250.0)


__all__ = [
    "AnalogPort",
    "HardwareError",
    "HardwareInitError",
    "RelayPort",
    "SensorReadError",
    "SimulatedAnalogBus",
    "SimulatedRelayBoard",
    "build_ports",
]
