from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, Optional

from services.actuator import StartResult, ZoneActuator
from services.history import HistoryEntry, HistoryStore
from services.notifications import NotificationService
from services.recurrence import CronSchedule, next_fire_time, parse_recurrence
from services.storage import PersistenceError, SettingsStore
from services.zones import ZoneConfig, validate_zone

logger = logging.getLogger("irrigation.hub.schedule")


def local_isoformat(moment: datetime) -> str:
    """ISO string with the UTC offset in force at ``moment``; naive values are host-local."""
    return (moment if moment.tzinfo is not None else moment.astimezone()).isoformat()


def seconds_until(now: datetime, moment: datetime) -> float:
    """Elapsed seconds between two wall-clock readings, honouring any DST change in between."""
    # Same-tzinfo subtraction ignores offset changes, so compare absolute instants.
    return (moment.astimezone() - now.astimezone()).total_seconds()


@dataclass(slots=True)
class ScheduleJob:
    zone: int
    expression: str
    duration_seconds: int
    active: bool = True
    next_run: Optional[datetime] = None
    task: Optional[asyncio.Task[None]] = field(default=None, repr=False)

    def to_payload(self) -> Dict[str, object]:
        return {
            "zone": self.zone,
            "recurrenceExpression": self.expression,
            "durationSeconds": self.duration_seconds,
            "active": self.active,
            "nextRun": local_isoformat(self.next_run) if self.next_run else None,
        }


class ScheduleEngine:
    """Keeps at most one recurring watering job per zone."""

    def __init__(
        self,
        *,
        actuator: ZoneActuator,
        settings_store: SettingsStore,
        history: HistoryStore,
        notifier: Optional[NotificationService] = None,
        now: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self._actuator = actuator
        self._settings = settings_store
        self._history = history
        self._notifier = notifier
        # Naive host-local time unless a zone is configured.
        self._now = now if now is not None else (lambda: datetime.now(tz))
        self._jobs: Dict[int, ScheduleJob] = {}

    @property
    def zone_count(self) -> int:
        return self._settings.zone_count

    def job_for(self, zone: int) -> Optional[ScheduleJob]:
        return self._jobs.get(zone)

    async def load_and_start(self) -> int:
        started = 0
        for zone, config in enumerate(self._settings.load_settings()):
            if not config.schedule_active:
                continue
            try:
                await self.start_zone_schedule(zone, config.schedule, config.water_duration_seconds)
            except ValueError as exc:
                logger.error("Zone %d has an invalid stored schedule %r: %s", zone, config.schedule, exc)
                continue
            started += 1
        logger.info("Schedule engine started %d job(s)", started)
        return started

    async def start_zone_schedule(self, zone: int, expression: str, duration_seconds: int) -> ScheduleJob:
        validate_zone(zone, self.zone_count)
        schedule = parse_recurrence(expression)
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be greater than zero")
        await self.stop_zone_schedule(zone)
        job = ScheduleJob(zone=zone, expression=schedule.expression, duration_seconds=int(duration_seconds))
        job.task = asyncio.create_task(self._run_job(job, schedule), name=f"zone-{zone}-schedule")
        self._jobs[zone] = job
        logger.info("Zone %d schedule started: %s for %ds", zone, job.expression, job.duration_seconds)
        return job

    async def stop_zone_schedule(self, zone: int) -> bool:
        job = self._jobs.pop(zone, None)
        if job is None:
            return False
        job.active = False
        task = job.task
        job.task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Zone %d schedule stopped", zone)
        return True

    async def update_zone_schedule(
        self,
        zone: int,
        expression: str,
        duration_seconds: int,
        enabled: bool = True,
    ) -> ZoneConfig:
        """Validate, persist and reinstall the schedule for ``zone``.

        Raises ``RecurrenceError`` for a malformed expression before anything
        is changed.
        """
        validate_zone(zone, self.zone_count)
        normalized = parse_recurrence(expression).expression
        if duration_seconds is None or duration_seconds <= 0:
            raise ValueError("duration_seconds must be greater than zero")
        try:
            config = self._settings.update_zone(
                zone,
                schedule=normalized,
                water_duration_seconds=int(duration_seconds),
                schedule_enabled=bool(enabled),
            )
        except PersistenceError as exc:
            logger.error("Failed to persist schedule for zone %d: %s", zone, exc)
            config = self._settings.get_zone(zone)
        await self.sync_zone(zone)
        logger.info("Zone %d schedule updated: %s, %ds, enabled=%s", zone, normalized, duration_seconds, enabled)
        self._notify(
            "schedule_updated",
            {"zone": zone, "schedule": normalized, "durationSeconds": int(duration_seconds), "enabled": bool(enabled)},
        )
        return config

    async def sync_zone(self, zone: int) -> Optional[ScheduleJob]:
        """Drop any job for ``zone`` and reinstall one if the stored settings call for it."""
        validate_zone(zone, self.zone_count)
        await self.stop_zone_schedule(zone)
        config = self._settings.get_zone(zone)
        if not config.schedule_active:
            return None
        return await self.start_zone_schedule(zone, config.schedule, config.water_duration_seconds)

    def get_next_watering_time(self, zone: int) -> Optional[datetime]:
        validate_zone(zone, self.zone_count)
        config = self._settings.get_zone(zone)
        if not config.schedule_active or not config.schedule:
            return None
        return next_fire_time(config.schedule, self._now())

    def get_schedule_info(self) -> List[Dict[str, object]]:
        info: List[Dict[str, object]] = []
        for zone, config in enumerate(self._settings.load_settings()):
            job = self._jobs.get(zone)
            next_time = self.get_next_watering_time(zone)
            info.append(
                {
                    "zone": zone,
                    "active": job is not None and job.active,
                    "nextWatering": local_isoformat(next_time) if next_time else None,
                    "cronPattern": job.expression if job else config.schedule,
                    "durationSeconds": job.duration_seconds if job else config.water_duration_seconds,
                }
            )
        return info

    async def restart_all(self) -> int:
        logger.info("Restarting all zone schedules")
        for zone in list(self._jobs):
            await self.stop_zone_schedule(zone)
        return await self.load_and_start()

    async def reset_to_defaults(self) -> None:
        logger.info("Resetting all schedules to defaults")
        for zone in range(self.zone_count):
            default = ZoneConfig.default(zone)
            await self.update_zone_schedule(zone, default.schedule, default.water_duration_seconds, True)

    async def close(self) -> None:
        for zone in list(self._jobs):
            await self.stop_zone_schedule(zone)

    async def execute_scheduled_watering(self, zone: int, duration_seconds: int) -> Optional[StartResult]:
        config = self._settings.get_zone(zone)
        if not config.schedule_active:
            logger.warning("Scheduled watering skipped for %s: zone or schedule disabled", config.name)
            return None
        logger.info("Starting scheduled watering for %s (%ds)", config.name, duration_seconds)
        result = await self._actuator.start_watering(zone, int(duration_seconds) * 1000, "scheduled")
        if not result.started:
            logger.warning("Scheduled watering for %s was rejected: %s", config.name, result.reason)
            self._notify(
                "scheduled_watering_failed",
                {"zone": zone, "name": config.name, "reason": result.reason},
            )
            return result
        try:
            await self._history.append_entry(
                HistoryEntry(
                    kind="scheduled_watering",
                    zone=zone,
                    details={"durationMs": int(duration_seconds) * 1000, "schedule": config.schedule},
                )
            )
        except PersistenceError as exc:
            logger.error("Failed to record scheduled watering for zone %d: %s", zone, exc)
        self._notify("scheduled_watering", {"zone": zone, "name": config.name, "durationSeconds": int(duration_seconds)})
        return result

    async def _run_job(self, job: ScheduleJob, schedule: CronSchedule) -> None:
        last_run: Optional[datetime] = None
        while job.active:
            now = self._now()
            after = max(now, last_run) if last_run is not None else now
            next_run = schedule.next_after(after)
            job.next_run = next_run
            if next_run is None:
                logger.warning("Zone %d schedule %r never fires; job left idle", job.zone, job.expression)
                return
            await asyncio.sleep(max(0.0, seconds_until(now, next_run)))
            if not job.active:
                return
            last_run = next_run
            try:
                await self.execute_scheduled_watering(job.zone, job.duration_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.error("Scheduled watering for zone %d failed: %s", job.zone, exc, exc_info=True)

    def _notify(self, event_kind: str, payload: Dict[str, object]) -> None:
        if self._notifier is not None:
            self._notifier.notify(event_kind, payload)


__all__ = ["ScheduleEngine", "ScheduleJob", "local_isoformat", "seconds_until"]
