from __future__ import annotations

import asyncio
import sqlite3
from typing import Callable, Optional

import pytest

from hardware import SimulatedAnalogBus
from services.actuator import ZoneActuator
from services.decision import DecisionEngine, should_water
from services.history import HistoryEntry, HistoryStore
from services.notifications import NotificationService
from services.sensor_reader import SensorReader
from services.storage import SettingsStore

DRY_RAW = 22_000.0
MOIST_RAW = 16_000.0
SOAKED_RAW = 1_000.0


@pytest.fixture
def actuator(make_actuator: Callable[..., ZoneActuator]) -> ZoneActuator:
    return make_actuator()


@pytest.fixture
def engine(
    analog: SimulatedAnalogBus,
    actuator: ZoneActuator,
    settings_store: SettingsStore,
    history: HistoryStore,
    notifier: NotificationService,
) -> DecisionEngine:
    return DecisionEngine(
        sensor_reader=SensorReader(analog, sample_delay_seconds=0.0),
        actuator=actuator,
        settings_store=settings_store,
        history=history,
        channels=[0, 1, 2, 3],
        notifier=notifier,
        hysteresis_window=3,
        initial_delay_seconds=0.0,
        channel_delay_seconds=0.0,
    )


async def _seed(history: HistoryStore, zone: int, *statuses: str) -> None:
    for status in statuses:
        await history.append_entry(HistoryEntry(kind="sensor_reading", zone=zone, status=status, raw_value=0.0))


def test_should_water_requires_full_dry_window() -> None:
    assert should_water(["dry", "air", "dry"]) is True
    assert should_water(["moist", "dry", "dry"]) is False
    assert should_water(["dry", "dry"]) is False
    assert should_water(["dry", "dry", "dry", "wet"], window=3) is True


@pytest.mark.anyio
async def test_three_dry_readings_trigger_watering(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
    notifier: NotificationService,
) -> None:
    await _seed(history, 0, "dry", "dry")
    analog.set_baseline(0, DRY_RAW)
    try:
        report = await engine.check_and_water()

        assert report is not None
        assert report.triggered == [0]
        assert actuator.is_watering(0)
        assert actuator.get_state(0).daily_watering_count == 0
        started = await history.query_recent(0, "watering_started", 1)
        assert started[0].details == {"cause": "scheduled", "durationMs": 15_000}
        assert notifier.list_events(event_type="automatic_watering")[0]["payload"]["zone"] == 0
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_latest_moist_reading_blocks_watering(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
) -> None:
    await _seed(history, 0, "dry", "dry")
    analog.set_baseline(0, MOIST_RAW)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.triggered == []
        assert not actuator.is_watering(0)
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_error_entries_do_not_break_the_dry_streak(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
) -> None:
    await _seed(history, 2, "dry", "error", "dry")
    analog.set_baseline(2, DRY_RAW)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.triggered == [2]
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_not_enough_history_means_no_watering(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
) -> None:
    await _seed(history, 1, "dry")
    analog.set_baseline(1, DRY_RAW)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.triggered == []
        assert len(await history.query_recent(1, "sensor_reading", 10)) == 2
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_oversaturated_zone_warns_without_actuation(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    notifier: NotificationService,
) -> None:
    analog.set_baseline(3, SOAKED_RAW)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.oversaturated == [3]
        assert not actuator.is_watering(3)
        events = notifier.list_events(event_type="oversaturated")
        assert events[0]["severity"] == "warning"
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_failed_sensor_is_reported_and_not_recorded(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
    notifier: NotificationService,
) -> None:
    analog.set_baseline(1, None)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.readings[1].status == "error"
        assert report.readings[1].raw_value is None
        assert await history.query_recent(1, "sensor_reading", 5) == []
        assert notifier.list_events(event_type="sensor_error")[0]["payload"]["zone"] == 1
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_disabled_sensor_and_disabled_zone_are_skipped(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
    settings_store: SettingsStore,
) -> None:
    settings_store.update_zone(0, sensor_enabled=False)
    settings_store.update_zone(1, enabled=False)
    await _seed(history, 1, "dry", "dry")
    analog.set_baseline(0, DRY_RAW)
    analog.set_baseline(1, DRY_RAW)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.readings[0].status == "disabled"
        assert 0 not in analog.reads
        assert report.readings[1].status == "dry"
        assert report.triggered == []
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_busy_zone_is_reported_as_rejected(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
) -> None:
    await _seed(history, 0, "dry", "dry")
    analog.set_baseline(0, DRY_RAW)
    await actuator.start_watering(0, 60_000)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.rejected == {0: "already_watering"}
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_overlapping_check_is_skipped(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    release = asyncio.Event()

    async def slow_read(zone: int):
        await release.wait()
        return await original(zone)

    original = engine.read_zone
    monkeypatch.setattr(engine, "read_zone", slow_read)
    try:
        first = asyncio.create_task(engine.check_and_water())
        await asyncio.sleep(0.01)
        assert engine.check_in_progress is True

        assert await engine.check_and_water() is None
        assert engine.trigger_cycle() is False

        release.set()
        report: Optional[object] = await first
        assert report is not None
        assert engine.check_in_progress is False
    finally:
        await actuator.shutdown()


@pytest.mark.anyio
async def test_periodic_loop_runs_initial_check(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    history: HistoryStore,
) -> None:
    await engine.start()
    try:
        await asyncio.sleep(0.2)
        readings = await history.query_recent(0, "sensor_reading", 5)
        assert len(readings) == 1
        assert [reading.zone for reading in engine.latest()] == [0, 1, 2, 3]
    finally:
        await engine.stop()
        await actuator.shutdown()


@pytest.mark.anyio
async def test_history_read_failure_skips_only_that_zone(
    engine: DecisionEngine,
    actuator: ZoneActuator,
    analog: SimulatedAnalogBus,
    history: HistoryStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    await _seed(history, 0, "dry", "dry")
    await _seed(history, 2, "dry", "dry")
    analog.set_baseline(0, DRY_RAW)
    analog.set_baseline(2, DRY_RAW)
    original = history._select_recent

    def flaky_select(zone: int, *args):
        if zone == 0:
            raise sqlite3.OperationalError("disk I/O error")
        return original(zone, *args)

    monkeypatch.setattr(history, "_select_recent", flaky_select)
    try:
        report = await engine.check_and_water()
        assert report is not None
        assert report.triggered == [2]
        assert not actuator.is_watering(0)
    finally:
        await actuator.shutdown()
