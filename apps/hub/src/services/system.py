from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo
from typing import Any, Dict, List, Optional

from hardware import AnalogPort, HardwareError, RelayPort, build_ports
from services.actuator import StartResult, StopResult, ZoneActuator
from services.actuator_state import ActuatorStateStore
from services.decision import CheckReport, DecisionEngine, Reading
from services.history import HistoryStore
from services.moisture import MoistureThresholds
from services.notifications import NotificationService
from services.schedule import ScheduleEngine
from services.sensor_reader import SensorReader
from services.storage import SettingsStore
from services.zones import ZoneConfig

logger = logging.getLogger("irrigation.hub.system")


def _data_path(value: str) -> Path:
    return Path(value).expanduser().resolve()


@dataclass(slots=True)
class IrrigationSystem:
    """Every long-lived component of the hub, built once per process."""

    relays: RelayPort
    analog: AnalogPort
    settings_store: SettingsStore
    state_store: ActuatorStateStore
    history: HistoryStore
    notifier: NotificationService
    sensor_reader: SensorReader
    actuator: ZoneActuator
    decision: DecisionEngine
    schedule: ScheduleEngine
    default_duration_ms: int = 10_000
    analog_ready: bool = False
    running: bool = False

    async def start(self, *, run_checks: bool = True) -> None:
        if self.running:
            return
        try:
            self.analog.open()
            self.analog_ready = True
        except HardwareError as exc:
            logger.error("ADC could not be opened; sensor reads will fail: %s", exc)
            self.notifier.notify("hardware_error", {"component": "adc", "detail": str(exc)})
        await self.actuator.start()
        await self.schedule.load_and_start()
        if run_checks:
            await self.decision.start()
        self.running = True
        self.notifier.notify("system", {"message": "irrigation hub started", "zones": self.actuator.zone_count})
        logger.info("Irrigation system started with %d zone(s)", self.actuator.zone_count)

    async def shutdown(self) -> None:
        logger.info("Shutting down irrigation system")
        await self.decision.stop()
        await self.schedule.close()
        # Relays go off before they are released.
        await self.actuator.shutdown()
        if self.analog_ready:
            try:
                self.analog.close()
            except HardwareError as exc:
                logger.warning("ADC close failed: %s", exc)
            self.analog_ready = False
        await self.notifier.close()
        self.running = False

    async def start_watering(self, zone: int, duration_ms: Optional[int] = None) -> StartResult:
        return await self.actuator.start_watering(zone, duration_ms or self.default_duration_ms, "manual")

    async def stop_watering(self, zone: int) -> StopResult:
        return await self.actuator.stop_watering(zone)

    async def stop_all(self) -> int:
        return await self.actuator.stop_all()

    def get_zone_states(self) -> List[Dict[str, Any]]:
        return self.actuator.get_zone_states()

    async def read_all_zone_readings(self) -> List[Reading]:
        return await self.decision.read_all_zone_readings()

    async def check_and_water(self) -> Optional[CheckReport]:
        return await self.decision.check_and_water()

    async def update_zone_schedule(
        self,
        zone: int,
        expression: str,
        duration_seconds: int,
        enabled: bool = True,
    ) -> ZoneConfig:
        return await self.schedule.update_zone_schedule(zone, expression, duration_seconds, enabled)

    def get_next_watering_time(self, zone: int) -> Optional[datetime]:
        return self.schedule.get_next_watering_time(zone)

    async def set_zone_enabled(self, zone: int, enabled: bool) -> ZoneConfig:
        config = self.settings_store.update_zone(zone, enabled=bool(enabled))
        if not config.enabled and self.actuator.is_watering(zone):
            await self.actuator.stop_watering(zone)
        await self.schedule.sync_zone(zone)
        logger.info("Zone %d %s", zone, "enabled" if config.enabled else "disabled")
        return config

    def set_sensor_enabled(self, zone: int, enabled: bool) -> ZoneConfig:
        return self.settings_store.update_zone(zone, sensor_enabled=bool(enabled))


def build_system(settings) -> IrrigationSystem:
    """Wire stores, ports and engines from ``settings``. Nothing is started."""
    notifier = NotificationService(
        webhook_url=settings.notify_webhook_url,
        timeout=settings.notify_timeout,
        history_limit=settings.notify_history_limit,
    )
    relays, analog = build_ports(settings)
    settings_store = SettingsStore(_data_path(settings.zone_settings_path), zone_count=settings.zone_count)
    state_store = ActuatorStateStore(_data_path(settings.actuator_state_path))
    history = HistoryStore(db_path=_data_path(settings.history_db), max_rows=settings.history_max_rows)

    def _on_unreliable(channel: int, samples: List[float], median: float) -> None:
        notifier.notify(
            "sensor_unreliable",
            {"channel": channel, "samples": [round(value, 1) for value in samples], "median": round(median, 1)},
        )

    sensor_reader = SensorReader(
        analog,
        attempts=settings.sensor_attempts,
        sample_delay_seconds=settings.sensor_sample_delay_ms / 1000.0,
        outlier_tolerance=settings.sensor_outlier_tolerance,
        max_outlier_fraction=settings.sensor_outlier_max_fraction,
        on_unreliable=_on_unreliable,
    )
    actuator = ZoneActuator(
        relays=relays,
        settings_store=settings_store,
        state_store=state_store,
        history=history,
        notifier=notifier,
        manual_cooldown_ms=int(settings.manual_cooldown_seconds * 1000),
        max_daily_manual=settings.max_daily_manual_waterings,
        reset_poll_seconds=settings.daily_reset_poll_seconds,
    )
    decision = DecisionEngine(
        sensor_reader=sensor_reader,
        actuator=actuator,
        settings_store=settings_store,
        history=history,
        channels=settings.adc_channels,
        thresholds=MoistureThresholds.from_settings(settings),
        notifier=notifier,
        hysteresis_window=settings.moisture_hysteresis_window,
        check_interval_seconds=settings.moisture_check_interval_seconds,
        initial_delay_seconds=settings.moisture_initial_delay_seconds,
        channel_delay_seconds=settings.sensor_channel_delay_ms / 1000.0,
    )
    schedule = ScheduleEngine(
        actuator=actuator,
        settings_store=settings_store,
        history=history,
        notifier=notifier,
        tz=ZoneInfo(settings.time_zone) if settings.time_zone else None,
    )
    return IrrigationSystem(
        relays=relays,
        analog=analog,
        settings_store=settings_store,
        state_store=state_store,
        history=history,
        notifier=notifier,
        sensor_reader=sensor_reader,
        actuator=actuator,
        decision=decision,
        schedule=schedule,
        default_duration_ms=settings.watering_duration_ms,
    )


__all__ = ["IrrigationSystem", "build_system"]
