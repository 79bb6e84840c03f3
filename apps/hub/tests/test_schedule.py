from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from services.actuator import ZoneActuator
from services.history import HistoryStore
from services.notifications import NotificationService
from services.recurrence import RecurrenceError, next_fire_time
from services.schedule import ScheduleEngine, local_isoformat, seconds_until
from services.storage import SettingsStore
from services.zones import ZoneIndexError

# A tenth of a second before the 08:00 slot.
JUST_BEFORE_EIGHT = datetime(2024, 5, 1, 7, 59, 59, 900_000)


@pytest.fixture
def actuator(make_actuator: Callable[..., ZoneActuator]) -> ZoneActuator:
    return make_actuator()


@pytest.fixture
def scheduler(
    actuator: ZoneActuator,
    settings_store: SettingsStore,
    history: HistoryStore,
    notifier: NotificationService,
) -> ScheduleEngine:
    return ScheduleEngine(
        actuator=actuator,
        settings_store=settings_store,
        history=history,
        notifier=notifier,
        now=lambda: JUST_BEFORE_EIGHT,
    )


@pytest.mark.anyio
async def test_load_and_start_only_installs_enabled_schedules(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
) -> None:
    settings_store.update_zone(0, schedule_enabled=True)
    settings_store.update_zone(1, schedule_enabled=True, enabled=False)
    try:
        assert await scheduler.load_and_start() == 1
        job = scheduler.job_for(0)
        assert job is not None and job.expression == "0 8 * * *"
        assert scheduler.job_for(1) is None

        info = scheduler.get_schedule_info()
        assert [entry["active"] for entry in info] == [True, False, False, False]
        assert info[0]["nextWatering"] == datetime(2024, 5, 1, 8, 0).astimezone().isoformat()
        assert info[2]["cronPattern"] == "0 7,19 * * *"
        assert info[1]["nextWatering"] is None
    finally:
        await scheduler.close()
        await actuator.shutdown()


@pytest.mark.anyio
async def test_invalid_expression_changes_nothing(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
) -> None:
    try:
        with pytest.raises(RecurrenceError):
            await scheduler.update_zone_schedule(0, "not a schedule", 30)
        assert settings_store.get_zone(0).schedule == "0 8 * * *"
        assert settings_store.get_zone(0).schedule_enabled is False
        assert scheduler.job_for(0) is None
        with pytest.raises(ZoneIndexError):
            await scheduler.update_zone_schedule(9, "0 8 * * *", 30)
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_update_persists_and_replaces_job(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
    notifier: NotificationService,
    tmp_path: Path,
) -> None:
    try:
        await scheduler.update_zone_schedule(2, "30 6 * * *", 25)
        first = scheduler.job_for(2)
        assert first is not None

        config = await scheduler.update_zone_schedule(2, "0 21 * * 1-5", 40)
        second = scheduler.job_for(2)

        assert second is not None and second is not first
        assert first.active is False
        assert second.expression == "0 21 * * 1-5"
        assert config.water_duration_seconds == 40
        reloaded = SettingsStore(tmp_path / "settings.json", zone_count=4).get_zone(2)
        assert reloaded.schedule == "0 21 * * 1-5"
        assert reloaded.schedule_enabled is True
        assert len(notifier.list_events(event_type="schedule_updated")) == 2
    finally:
        await scheduler.close()
        await actuator.shutdown()


@pytest.mark.anyio
async def test_disabling_schedule_removes_job(scheduler: ScheduleEngine, actuator: ZoneActuator) -> None:
    try:
        await scheduler.update_zone_schedule(0, "0 8 * * *", 15)
        assert scheduler.get_next_watering_time(0) == datetime(2024, 5, 1, 8, 0)

        await scheduler.update_zone_schedule(0, "0 8 * * *", 15, enabled=False)

        assert scheduler.job_for(0) is None
        assert scheduler.get_next_watering_time(0) is None
    finally:
        await scheduler.close()
        await actuator.shutdown()


@pytest.mark.anyio
async def test_job_fires_scheduled_watering(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    history: HistoryStore,
    notifier: NotificationService,
) -> None:
    try:
        await scheduler.update_zone_schedule(1, "0 8 * * *", 5)
        await asyncio.sleep(0.3)

        assert actuator.is_watering(1)
        assert actuator.get_state(1).daily_watering_count == 0
        entries = await history.query_recent(1, "scheduled_watering", 5)
        assert len(entries) == 1
        assert entries[0].details["durationMs"] == 5_000
        assert notifier.list_events(event_type="scheduled_watering")[0]["payload"]["zone"] == 1
        job = scheduler.job_for(1)
        assert job is not None and job.next_run == datetime(2024, 5, 2, 8, 0)
    finally:
        await scheduler.close()
        await actuator.shutdown()


@pytest.mark.anyio
async def test_execute_skips_zone_disabled_since_install(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
) -> None:
    settings_store.update_zone(3, schedule_enabled=True, enabled=False)
    try:
        assert await scheduler.execute_scheduled_watering(3, 10) is None
        assert not actuator.is_watering(3)
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_execute_reports_rejection(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
    notifier: NotificationService,
) -> None:
    settings_store.update_zone(0, schedule_enabled=True)
    await actuator.start_watering(0, 60_000)
    try:
        result = await scheduler.execute_scheduled_watering(0, 10)
        assert result is not None and result.reason == "already_watering"
        failed = notifier.list_events(event_type="scheduled_watering_failed")
        assert failed[0]["payload"]["reason"] == "already_watering"
        assert failed[0]["severity"] == "warning"
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_reset_to_defaults_and_restart(
    scheduler: ScheduleEngine,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
) -> None:
    try:
        await scheduler.update_zone_schedule(2, "15 4 * * *", 99)
        await scheduler.reset_to_defaults()

        zones = settings_store.load_settings()
        assert [zone.schedule for zone in zones] == ["0 8 * * *", "0 18 * * *", "0 7,19 * * *", "0 9 * * 1,3,5"]
        assert [zone.water_duration_seconds for zone in zones] == [15, 12, 10, 20]
        assert all(zone.schedule_enabled for zone in zones)
        assert all(scheduler.job_for(zone) is not None for zone in range(4))

        assert await scheduler.restart_all() == 4
        await scheduler.close()
        assert all(scheduler.job_for(zone) is None for zone in range(4))
    finally:
        await scheduler.close()
        await actuator.shutdown()


def test_sleep_interval_spans_daylight_saving_change() -> None:
    try:
        new_york = ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not installed")
    now = datetime(2024, 3, 9, 12, 0, tzinfo=new_york)

    next_run = next_fire_time("0 8 * * *", now)

    assert next_run == datetime(2024, 3, 10, 8, 0, tzinfo=new_york)
    assert next_run.utcoffset() == timedelta(hours=-4)
    # Clocks spring forward overnight, so only 19 hours pass.
    assert seconds_until(now, next_run) == 19 * 3600


def test_naive_times_are_reported_with_local_offset() -> None:
    rendered = local_isoformat(datetime(2024, 5, 1, 8, 0))
    assert rendered.startswith("2024-05-01T08:00:00")
    assert rendered == datetime(2024, 5, 1, 8, 0).astimezone().isoformat()
