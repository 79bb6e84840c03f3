from __future__ import annotations

import random
from collections import deque
from threading import RLock
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple

from .ports import HardwareInitError, SensorReadError


class SimulatedRelayBoard:
    """In-memory relay bank used for development and tests.

    Every output change is appended to ``toggles`` so callers can assert on
    the exact sequence of relay transitions.
    """

    def __init__(self, *, failing_zones: Iterable[int] = ()) -> None:
        self._lock = RLock()
        self._failing: Set[int] = set(failing_zones)
        self.outputs: Dict[int, bool] = {}
        self.toggles: List[Tuple[int, bool]] = []
        self.released: Set[int] = set()

    def setup(self, zone: int) -> None:
        if zone in self._failing:
            raise HardwareInitError(f"relay for zone {zone} is not available")
        with self._lock:
            self.outputs[zone] = False
            self.released.discard(zone)

    def set_output(self, zone: int, on: bool) -> None:
        with self._lock:
            if zone not in self.outputs:
                raise HardwareInitError(f"relay for zone {zone} was not set up")
            self.outputs[zone] = bool(on)
            self.toggles.append((zone, bool(on)))

    def release(self, zone: int) -> None:
        with self._lock:
            self.outputs.pop(zone, None)
            self.released.add(zone)

    def is_on(self, zone: int) -> bool:
        with self._lock:
            return self.outputs.get(zone, False)

    def on_transitions(self, zone: int) -> int:
        with self._lock:
            return sum(1 for toggled_zone, on in self.toggles if toggled_zone == zone and on)


class SimulatedAnalogBus:
    """Scripted ADC. Queued values are consumed first, then the baseline is used."""

    def __init__(
        self,
        baseline: Optional[Dict[int, float]] = None,
        *,
        jitter: float = 0.0,
        seed: int | None = None,
    ) -> None:
        self._lock = RLock()
        self._baseline: Dict[int, float] = dict(baseline or {})
        self._queued: Dict[int, Deque[Optional[float]]] = {}
        self._jitter = max(0.0, jitter)
        self._rng = random.Random(seed)
        self.opened = False
        self.reads: List[int] = []

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.opened = False

    def set_baseline(self, channel: int, value: Optional[float]) -> None:
        with self._lock:
            if value is None:
                self._baseline.pop(channel, None)
            else:
                self._baseline[channel] = float(value)

    def queue(self, channel: int, values: Iterable[Optional[float]]) -> None:
        """Queue samples for ``channel``; ``None`` entries simulate a failed read."""
        with self._lock:
            self._queued.setdefault(channel, deque()).extend(values)

    def read_raw(self, channel: int) -> float:
        with self._lock:
            self.reads.append(channel)
            if not self.opened:
                raise SensorReadError("ADC bus is not open")
            pending = self._queued.get(channel)
            if pending:
                value = pending.popleft()
                if value is None:
                    raise SensorReadError(f"simulated read failure on channel {channel}")
                return float(value)
            if channel not in self._baseline:
                raise SensorReadError(f"no signal on channel {channel}")
            value = self._baseline[channel]
            if self._jitter:
                value += self._rng.uniform(-self._jitter, self._jitter)
            return value


__all__ = ["SimulatedAnalogBus", "SimulatedRelayBoard"]
