from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, List, Mapping, Optional

from services.storage import read_json, write_json


@dataclass(slots=True)
class ActuatorState:
    """Per-zone counters that must survive a restart."""

    is_watering: bool = False
    last_watering_start_ms: Optional[int] = None
    daily_watering_count: int = 0
    last_reset_date: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "ActuatorState":
        if not isinstance(payload, Mapping):
            return cls()
        last_start = payload.get("lastWateringStartMillis")
        count = payload.get("dailyWateringCount")
        reset_date = payload.get("lastResetDate")
        # null means the zone has never been started; 0 is a real timestamp.
        if isinstance(last_start, bool) or not isinstance(last_start, (int, float)) or last_start < 0:
            last_start = None
        return cls(
            is_watering=payload.get("isWatering") is True,
            last_watering_start_ms=int(last_start) if last_start is not None else None,
            daily_watering_count=int(count) if isinstance(count, int) and count > 0 else 0,
            last_reset_date=reset_date if isinstance(reset_date, str) else "",
        )

    def to_payload(self) -> dict[str, object]:
        data = asdict(self)
        return {
            "isWatering": data["is_watering"],
            "lastWateringStartMillis": data["last_watering_start_ms"],
            "dailyWateringCount": data["daily_watering_count"],
            "lastResetDate": data["last_reset_date"],
        }


class ActuatorStateStore:
    """JSON snapshot of every zone's ``ActuatorState``."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = RLock()

    def load_actuator_state(self) -> Optional[List[ActuatorState]]:
        with self._lock:
            raw = read_json(self._path)
        if raw is None:
            return None
        entries = raw.get("zones") if isinstance(raw, Mapping) else raw
        if not isinstance(entries, list):
            return None
        return [ActuatorState.from_payload(entry) for entry in entries]

    def save_actuator_state(self, states: Iterable[ActuatorState]) -> None:
        payload = {"version": 1, "zones": [state.to_payload() for state in states]}
        with self._lock:
            write_json(self._path, payload)


__all__ = ["ActuatorState", "ActuatorStateStore"]
