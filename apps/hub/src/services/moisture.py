from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

MoistureStatus = Literal["air", "dry", "moist", "wet", "water", "disabled", "error"]
DRY_STATUSES: frozenset[str] = frozenset({"air", "dry"})


@dataclass(frozen=True, slots=True)
class MoistureThresholds:
    """Calibration points in raw ADC units. Readings fall as the soil gets wetter."""

    air: float = 27_800.0
    dry: float = 19_000.0
    moist: float = 13_000.0
    wet: float = 5_000.0
    water: float = 0.0

    def __post_init__(self) -> None:
        if not (self.air > self.dry > self.moist > self.wet > self.water):
            raise ValueError("moisture thresholds must be strictly decreasing: air > dry > moist > wet > water")

    @classmethod
    def from_settings(cls, settings) -> "MoistureThresholds":
        return cls(
            air=settings.moisture_threshold_air,
            dry=settings.moisture_threshold_dry,
            moist=settings.moisture_threshold_moist,
            wet=settings.moisture_threshold_wet,
            water=settings.moisture_threshold_water,
        )


@dataclass(frozen=True, slots=True)
class MoistureClassification:
    percent: int
    status: MoistureStatus


def _interpolate(value: float, high: float, low: float, start: int, span: int) -> float:
    # ``value`` moves from ``high`` toward ``low`` as the band fills from ``start`` to ``start + span``.
    return start + span * (high - value) / (high - low)


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def classify(value: float, thresholds: MoistureThresholds | None = None) -> MoistureClassification:
    """Map a raw reading onto a moisture percentage and status band.

    Bands: air -> 0%, dry -> 0..30%, moist -> 31..70%, wet -> 71..90%,
    water -> 91..100%. The result is clamped to [0, 100].
    """
    t = thresholds or MoistureThresholds()
    if value > t.air:
        percent: float = 0.0
        status: MoistureStatus = "air"
    elif value > t.dry:
        percent = _interpolate(value, t.air, t.dry, 0, 30)
        status = "dry"
    elif value > t.moist:
        percent = _interpolate(value, t.dry, t.moist, 31, 39)
        status = "moist"
    elif value > t.wet:
        percent = _interpolate(value, t.moist, t.wet, 71, 19)
        status = "wet"
    else:
        percent = _interpolate(value, t.wet, t.water, 91, 9)
        status = "water"
    clamped = max(0, min(100, _round_half_up(percent)))
    return MoistureClassification(percent=clamped, status=status)


__all__ = [
    "DRY_STATUSES",
    "MoistureClassification",
    "MoistureStatus",
    "MoistureThresholds",
    "classify",
]
