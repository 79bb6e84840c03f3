from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, List, Mapping, Optional

from services.zones import ZoneConfig, validate_zone

logger = logging.getLogger("irrigation.hub.storage")


class PersistenceError(RuntimeError):
    """Raised when a store cannot write its backing file."""


def read_json(path: Path) -> Optional[Any]:
    """Return the decoded file contents, or ``None`` when missing or unreadable."""
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return None


def write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` through a temporary file so readers never see a partial document."""
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}") from exc


class SettingsStore:
    """Zone configuration persisted as JSON. Zones are never deleted, only reconfigured."""

    def __init__(self, path: str | Path, *, zone_count: int) -> None:
        self._path = Path(path)
        self._zone_count = zone_count
        self._lock = RLock()
        self._zones: Optional[List[ZoneConfig]] = None

    @property
    def zone_count(self) -> int:
        return self._zone_count

    def load_settings(self) -> List[ZoneConfig]:
        with self._lock:
            if self._zones is None:
                self._zones = self._load_locked()
            return list(self._zones)

    def get_zone(self, index: int) -> ZoneConfig:
        validate_zone(index, self._zone_count)
        return self.load_settings()[index]

    def save_settings(self, zones: Iterable[ZoneConfig]) -> None:
        entries = list(zones)
        if len(entries) != self._zone_count:
            raise ValueError(f"expected {self._zone_count} zones, got {len(entries)}")
        with self._lock:
            # The cache only changes once the file holds the same zones.
            self._write_locked(entries)
            self._zones = entries

    def update_zone(self, index: int, **changes: Any) -> ZoneConfig:
        validate_zone(index, self._zone_count)
        with self._lock:
            zones = self.load_settings()
            updated = zones[index].with_changes(**changes)
            zones[index] = updated
            self.save_settings(zones)
            return updated

    def update_zone_name(self, index: int, name: str) -> bool:
        validate_zone(index, self._zone_count)
        if not isinstance(name, str) or not name.strip():
            return False
        try:
            self.update_zone(index, name=name.strip())
        except PersistenceError as exc:
            logger.warning("Failed to rename zone %d: %s", index, exc)
            return False
        return True

    def _load_locked(self) -> List[ZoneConfig]:
        raw = read_json(self._path)
        if raw is None:
            zones = [ZoneConfig.default(index) for index in range(self._zone_count)]
            if not self._path.exists():
                try:
                    self._write_locked(zones)
                except PersistenceError as exc:
                    logger.warning("Failed to write default settings: %s", exc)
            return zones
        payloads = raw.get("zones") if isinstance(raw, Mapping) else raw
        if not isinstance(payloads, list):
            payloads = []
        return [
            ZoneConfig.from_payload(index, payloads[index] if index < len(payloads) else None)
            for index in range(self._zone_count)
        ]

    def _write_locked(self, zones: List[ZoneConfig]) -> None:
        write_json(self._path, {"version": 1, "zones": [zone.to_payload() for zone in zones]})


__all__ = ["PersistenceError", "SettingsStore", "read_json", "write_json"]
