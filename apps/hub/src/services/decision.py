from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set

from services.actuator import ZoneActuator
from services.history import HistoryEntry, HistoryStore
from services.moisture import DRY_STATUSES, MoistureStatus, MoistureThresholds, classify
from services.notifications import NotificationService
from services.sensor_reader import SensorReader
from services.storage import PersistenceError, SettingsStore

logger = logging.getLogger("irrigation.hub.decision")


def _now_iso() -> str:
    iso = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


@dataclass(frozen=True, slots=True)
class Reading:
    zone: int
    raw_value: Optional[float]
    moisture_percent: Optional[int]
    status: MoistureStatus
    timestamp: str = field(default_factory=_now_iso)

    @property
    def valid(self) -> bool:
        return self.raw_value is not None and self.status not in ("error", "disabled")

    def to_payload(self) -> Dict[str, object]:
        return {
            "zone": self.zone,
            "rawValue": self.raw_value,
            "moisturePercent": self.moisture_percent,
            "status": self.status,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class CheckReport:
    readings: List[Reading]
    triggered: List[int] = field(default_factory=list)
    rejected: Dict[int, str] = field(default_factory=dict)
    oversaturated: List[int] = field(default_factory=list)


def should_water(recent_statuses: Sequence[str], window: int = 3) -> bool:
    """Hysteresis rule: the ``window`` most recent readings must all be dry (or air)."""
    if window <= 0 or len(recent_statuses) < window:
        return False
    return all(status in DRY_STATUSES for status in recent_statuses[:window])


class DecisionEngine:
    """Periodic moisture check that requests watering through the actuator."""

    def __init__(
        self,
        *,
        sensor_reader: SensorReader,
        actuator: ZoneActuator,
        settings_store: SettingsStore,
        history: HistoryStore,
        channels: Sequence[int],
        thresholds: Optional[MoistureThresholds] = None,
        notifier: Optional[NotificationService] = None,
        hysteresis_window: int = 3,
        check_interval_seconds: float = 900.0,
        initial_delay_seconds: float = 30.0,
        channel_delay_seconds: float = 0.1,
    ) -> None:
        self._reader = sensor_reader
        self._actuator = actuator
        self._settings = settings_store
        self._history = history
        self._channels = list(channels)
        self._thresholds = thresholds or MoistureThresholds()
        self._notifier = notifier
        self._window = max(1, hysteresis_window)
        self._interval = max(1.0, float(check_interval_seconds))
        self._initial_delay = max(0.0, float(initial_delay_seconds))
        self._channel_delay = max(0.0, float(channel_delay_seconds))
        self._check_in_progress = False
        self._latest: List[Reading] = []
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._cycles: Set[asyncio.Task[Optional[CheckReport]]] = set()

    @property
    def check_in_progress(self) -> bool:
        return self._check_in_progress

    def latest(self) -> List[Reading]:
        return list(self._latest)

    async def read_zone(self, zone: int) -> Reading:
        if zone >= len(self._channels):
            logger.error("No ADC channel configured for zone %d", zone)
            return Reading(zone=zone, raw_value=None, moisture_percent=None, status="error")
        value = await self._reader.robust_read(self._channels[zone])
        if value is None:
            return Reading(zone=zone, raw_value=None, moisture_percent=None, status="error")
        result = classify(value, self._thresholds)
        return Reading(zone=zone, raw_value=round(value, 1), moisture_percent=result.percent, status=result.status)

    async def read_all_zone_readings(self, *, record: bool = True) -> List[Reading]:
        """Sweep every zone once; valid readings are appended to history when ``record`` is set."""
        readings: List[Reading] = []
        zones = self._settings.load_settings()
        for zone, config in enumerate(zones):
            if not config.sensor_enabled:
                readings.append(Reading(zone=zone, raw_value=None, moisture_percent=None, status="disabled"))
                continue
            reading = await self.read_zone(zone)
            readings.append(reading)
            if record and reading.valid:
                await self._record(reading)
            if self._channel_delay and zone < len(zones) - 1:
                await asyncio.sleep(self._channel_delay)
        self._latest = readings
        return readings

    async def check_and_water(self) -> Optional[CheckReport]:
        """Run one check cycle. Returns ``None`` when a cycle is already running."""
        if self._check_in_progress:
            logger.warning("Previous moisture check still running; skipping this cycle")
            return None
        self._check_in_progress = True
        try:
            logger.info("Starting moisture check")
            readings = await self.read_all_zone_readings(record=True)
            report = CheckReport(readings=readings)
            zones = self._settings.load_settings()
            for reading in readings:
                await self._evaluate(reading, zones[reading.zone], report)
            return report
        finally:
            self._check_in_progress = False

    async def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._periodic_loop(), name="moisture-check")
        logger.info(
            "Moisture checks scheduled every %.0fs (first in %.0fs)",
            self._interval,
            self._initial_delay,
        )

    async def stop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        pending = [task] if task is not None else []
        pending.extend(self._cycles)
        for item in pending:
            item.cancel()
        for item in pending:
            try:
                await item
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.warning("Moisture check terminated with error: %s", exc)

    def trigger_cycle(self) -> bool:
        """Spawn a check cycle unless one is already in flight."""
        if self._check_in_progress:
            logger.warning("Moisture check still in progress; periodic trigger skipped")
            return False
        task = asyncio.create_task(self._run_cycle(), name="moisture-check-cycle")
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return True

    async def _periodic_loop(self) -> None:
        if self._initial_delay:
            await asyncio.sleep(self._initial_delay)
        while True:
            self.trigger_cycle()
            await asyncio.sleep(self._interval)

    async def _run_cycle(self) -> Optional[CheckReport]:
        try:
            return await self.check_and_water()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.error("Moisture check failed: %s", exc, exc_info=True)
            return None

    async def _evaluate(self, reading: Reading, config, report: CheckReport) -> None:
        zone = reading.zone
        if reading.status == "disabled":
            return
        if reading.status == "error":
            logger.error("Zone %d sensor read failed", zone)
            self._notify("sensor_error", {"zone": zone, "name": config.name})
            return
        logger.info("Zone %d: %s%% (%s)", zone, reading.moisture_percent, reading.status)
        if reading.status == "water":
            logger.warning("Zone %d is oversaturated; check drainage", zone)
            report.oversaturated.append(zone)
            self._notify("oversaturated", {"zone": zone, "name": config.name, "moisturePercent": reading.moisture_percent})
            return
        if not config.enabled:
            return

        try:
            recent = await self._history.query_recent(zone, "sensor_reading", self._window, exclude_statuses=("error",))
        except PersistenceError as exc:
            logger.error("Could not read history for zone %d: %s", zone, exc)
            return
        if not should_water([entry.status or "" for entry in recent], self._window):
            return

        result = await self._actuator.start_watering(zone, config.water_duration_seconds * 1000, "scheduled")
        if result.started:
            report.triggered.append(zone)
            logger.info("Automatic watering started for zone %d", zone)
            self._notify(
                "automatic_watering",
                {"zone": zone, "name": config.name, "status": reading.status, "moisturePercent": reading.moisture_percent},
            )
        else:
            report.rejected[zone] = result.reason or "rejected"

    async def _record(self, reading: Reading) -> None:
        try:
            await self._history.append_entry(
                HistoryEntry(
                    kind="sensor_reading",
                    zone=reading.zone,
                    timestamp=reading.timestamp,
                    status=reading.status,
                    raw_value=reading.raw_value,
                    moisture_percent=reading.moisture_percent,
                )
            )
        except PersistenceError as exc:
            logger.error("Failed to record reading for zone %d: %s", reading.zone, exc)

    def _notify(self, event_kind: str, payload: Dict[str, object]) -> None:
        if self._notifier is not None:
            self._notifier.notify(event_kind, payload)


__all__ = ["CheckReport", "DecisionEngine", "Reading", "should_water"]
