from __future__ import annotations

from typing import Protocol


class HardwareError(RuntimeError):
    """Base class for relay and ADC failures."""


class HardwareInitError(HardwareError):
    """Raised when a relay output or the ADC bus cannot be opened."""


class SensorReadError(HardwareError):
    """Raised when a single analog sample could not be taken."""


class RelayPort(Protocol):
    def setup(self, zone: int) -> None:
        """Claim the relay output for ``zone`` and drive it to the off level."""

    def set_output(self, zone: int, on: bool) -> None:
        ...

    def release(self, zone: int) -> None:
        ...


class AnalogPort(Protocol):
    def open(self) -> None:
        ...

    def read_raw(self, channel: int) -> float:
        """Return a single sample in raw ADC units or raise ``SensorReadError``."""

    def close(self) -> None:
        ...


__all__ = [
    "AnalogPort",
    "HardwareError",
    "HardwareInitError",
    "RelayPort",
    "SensorReadError",
]
