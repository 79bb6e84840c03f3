from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping

DEFAULT_SCHEDULES: tuple[str, ...] = (
    "0 8 * * *",
    "0 18 * * *",
    "0 7,19 * * *",
    "0 9 * * 1,3,5",
)
DEFAULT_DURATIONS_SECONDS: tuple[int, ...] = (15, 12, 10, 20)
FALLBACK_SCHEDULE = "0 8 * * *"
FALLBACK_DURATION_SECONDS = 15


class ZoneIndexError(ValueError):
    """Raised when a zone id falls outside the configured zone range."""


def validate_zone(zone: Any, zone_count: int) -> int:
    if isinstance(zone, bool) or not isinstance(zone, int):
        raise ZoneIndexError(f"zone must be an integer, got {zone!r}")
    if zone < 0 or zone >= zone_count:
        raise ZoneIndexError(f"zone {zone} is out of range (0..{zone_count - 1})")
    return zone


def _coerce_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _coerce_duration(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return fallback


@dataclass(frozen=True, slots=True)
class ZoneConfig:
    name: str
    enabled: bool = True
    sensor_enabled: bool = True
    schedule_enabled: bool = False
    schedule: str = FALLBACK_SCHEDULE
    water_duration_seconds: int = FALLBACK_DURATION_SECONDS

    @classmethod
    def default(cls, index: int) -> "ZoneConfig":
        return cls(
            name=f"Zone {index + 1}",
            schedule=DEFAULT_SCHEDULES[index] if index < len(DEFAULT_SCHEDULES) else FALLBACK_SCHEDULE,
            water_duration_seconds=(
                DEFAULT_DURATIONS_SECONDS[index] if index < len(DEFAULT_DURATIONS_SECONDS) else FALLBACK_DURATION_SECONDS
            ),
        )

    @classmethod
    def from_payload(cls, index: int, payload: Mapping[str, Any] | None) -> "ZoneConfig":
        baseline = cls.default(index)
        if not isinstance(payload, Mapping):
            return baseline
        name = payload.get("name")
        schedule = payload.get("schedule")
        return cls(
            name=name.strip() if isinstance(name, str) and name.strip() else baseline.name,
            enabled=_coerce_bool(payload.get("enabled"), baseline.enabled),
            sensor_enabled=_coerce_bool(payload.get("sensorEnabled"), baseline.sensor_enabled),
            schedule_enabled=_coerce_bool(payload.get("scheduleEnabled"), baseline.schedule_enabled),
            schedule=schedule.strip() if isinstance(schedule, str) and schedule.strip() else baseline.schedule,
            water_duration_seconds=_coerce_duration(payload.get("waterDuration"), baseline.water_duration_seconds),
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "sensorEnabled": self.sensor_enabled,
            "scheduleEnabled": self.schedule_enabled,
            "schedule": self.schedule,
            "waterDuration": self.water_duration_seconds,
        }

    def with_changes(self, **changes: Any) -> "ZoneConfig":
        return replace(self, **changes)

    @property
    def schedule_active(self) -> bool:
        return self.enabled and self.schedule_enabled


__all__ = [
    "DEFAULT_DURATIONS_SECONDS",
    "DEFAULT_SCHEDULES",
    "ZoneConfig",
    "ZoneIndexError",
    "validate_zone",
]
