from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from hardware.ports import AnalogPort, HardwareError

logger = logging.getLogger("irrigation.hub.sensors")

MIN_SAMPLES_FOR_FILTER = 3

UnreliableCallback = Callable[[int, List[float], float], None]


class SensorReader:
    """Takes several samples per channel and filters outliers around the median."""

    def __init__(
        self,
        port: AnalogPort,
        *,
        attempts: int = 5,
        sample_delay_seconds: float = 0.05,
        outlier_tolerance: float = 3000.0,
        max_outlier_fraction: float = 0.4,
        on_unreliable: Optional[UnreliableCallback] = None,
    ) -> None:
        self._port = port
        self._attempts = max(1, attempts)
        self._sample_delay = max(0.0, sample_delay_seconds)
        self._tolerance = outlier_tolerance
        self._max_outlier_fraction = max_outlier_fraction
        self._on_unreliable = on_unreliable

    async def sample(self, channel: int) -> float:
        """Single physical read. Raises ``SensorReadError`` on failure."""
        return await asyncio.to_thread(self._port.read_raw, channel)

    async def robust_read(self, channel: int, attempts: Optional[int] = None) -> Optional[float]:
        """Return a filtered reading for ``channel`` or ``None`` when every sample failed."""
        budget = self._attempts if attempts is None else max(1, attempts)
        samples: List[float] = []
        for index in range(budget):
            try:
                samples.append(await self.sample(channel))
            except HardwareError as exc:
                logger.debug("Sample %d on channel %d failed: %s", index + 1, channel, exc)
            if self._sample_delay and index < budget - 1:
                await asyncio.sleep(self._sample_delay)

        if not samples:
            logger.error("Channel %d: no successful samples out of %d attempts", channel, budget)
            return None
        if len(samples) < MIN_SAMPLES_FOR_FILTER:
            return sum(samples) / len(samples)

        ordered = sorted(samples)
        median = ordered[len(ordered) // 2]
        kept = [value for value in ordered if abs(value - median) < self._tolerance]
        discarded = len(ordered) - len(kept)
        if discarded > len(ordered) * self._max_outlier_fraction:
            logger.warning(
                "Channel %d: %d of %d samples were outliers, using median %.1f",
                channel,
                discarded,
                len(ordered),
                median,
            )
            if self._on_unreliable is not None:
                self._on_unreliable(channel, ordered, median)
            return median
        return sum(kept) / len(kept)


__all__ = ["SensorReader"]
