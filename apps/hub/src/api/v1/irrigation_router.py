from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from services.decision import CheckReport
from services.recurrence import RecurrenceError
from services.schedule import local_isoformat
from services.storage import PersistenceError
from services.system import IrrigationSystem
from services.zones import ZoneIndexError

from .dependencies import get_system

logger = logging.getLogger("irrigation.hub.api.irrigation")
router = APIRouter(prefix="/irrigation", tags=["irrigation"])


class StartWateringRequest(BaseModel):
    duration_ms: int | None = Field(
        default=None,
        alias="durationMs",
        gt=0,
        description="Optional watering duration in milliseconds. Defaults to the configured manual duration.",
    )

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ZoneUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=60)
    enabled: bool | None = None
    sensor_enabled: bool | None = Field(default=None, alias="sensorEnabled")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ScheduleUpdateRequest(BaseModel):
    schedule: str = Field(..., min_length=1, description="Five-field cron expression or @-macro")
    duration_seconds: int = Field(..., alias="durationSeconds", gt=0, le=3600)
    enabled: bool = True

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except ZoneIndexError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RecurrenceError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Persistence failure: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


def _report_payload(report: CheckReport) -> dict[str, Any]:
    return {
        "readings": [reading.to_payload() for reading in report.readings],
        "triggered": report.triggered,
        "rejected": {str(zone): reason for zone, reason in report.rejected.items()},
        "oversaturated": report.oversaturated,
    }


@router.get("/zones")
async def list_zones(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    return {"zones": system.get_zone_states()}


@router.get("/settings")
async def list_zone_settings(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    zones = system.settings_store.load_settings()
    return {"zones": [{"zone": index, **config.to_payload()} for index, config in enumerate(zones)]}


@router.patch("/zones/{zone}")
async def update_zone(
    zone: int,
    payload: ZoneUpdateRequest,
    system: IrrigationSystem = Depends(get_system),
) -> dict[str, Any]:
    with _translate_errors():
        if payload.name is not None and not system.settings_store.update_zone_name(zone, payload.name):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid zone name")
        if payload.sensor_enabled is not None:
            system.set_sensor_enabled(zone, payload.sensor_enabled)
        if payload.enabled is not None:
            await system.set_zone_enabled(zone, payload.enabled)
        config = system.settings_store.get_zone(zone)
    return {"zone": zone, **config.to_payload()}


@router.post("/zones/{zone}/start")
async def start_zone(
    zone: int,
    payload: StartWateringRequest | None = None,
    system: IrrigationSystem = Depends(get_system),
) -> dict[str, Any]:
    duration_ms = payload.duration_ms if payload is not None else None
    with _translate_errors():
        result = await system.start_watering(zone, duration_ms)
    if not result.started:
        detail: dict[str, Any] = {"reason": result.reason, "message": result.message}
        if result.retry_after_ms is not None:
            detail["retryAfterMs"] = result.retry_after_ms
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    return {"zone": zone, "started": True, "message": result.message}


@router.post("/zones/{zone}/stop")
async def stop_zone(zone: int, system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    with _translate_errors():
        result = await system.stop_watering(zone)
    if not result.stopped:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": result.reason, "message": result.message},
        )
    return {"zone": zone, "stopped": True, "message": result.message}


@router.post("/stop-all")
async def stop_all(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    stopped = await system.stop_all()
    logger.info("Stop-all requested; %d zone(s) stopped", stopped)
    return {"stopped": stopped}


@router.get("/readings")
async def get_readings(
    fresh: bool = Query(default=True, description="Take a new sweep instead of returning the latest one."),
    system: IrrigationSystem = Depends(get_system),
) -> dict[str, Any]:
    readings = await system.read_all_zone_readings() if fresh else system.decision.latest()
    return {"readings": [reading.to_payload() for reading in readings]}


@router.post("/check")
async def run_check(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    report = await system.check_and_water()
    if report is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Moisture check already in progress")
    return _report_payload(report)


@router.get("/history")
async def get_history(
    limit: int = Query(default=100, ge=1, le=1000),
    zone: int | None = Query(default=None, ge=0),
    system: IrrigationSystem = Depends(get_system),
) -> dict[str, Any]:
    if zone is not None and zone >= system.settings_store.zone_count:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"zone {zone} is out of range")
    with _translate_errors():
        entries = await system.history.list_recent(limit=limit, zone=zone)
    return {"history": [entry.as_payload() for entry in entries]}


@router.get("/schedules")
async def get_schedules(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    return {"schedules": system.schedule.get_schedule_info()}


@router.put("/zones/{zone}/schedule")
async def update_schedule(
    zone: int,
    payload: ScheduleUpdateRequest,
    system: IrrigationSystem = Depends(get_system),
) -> dict[str, Any]:
    with _translate_errors():
        config = await system.update_zone_schedule(zone, payload.schedule, payload.duration_seconds, payload.enabled)
        next_time = system.get_next_watering_time(zone)
    return {
        "zone": zone,
        **config.to_payload(),
        "nextWatering": local_isoformat(next_time) if next_time else None,
    }


@router.get("/zones/{zone}/next-watering")
async def next_watering(zone: int, system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    with _translate_errors():
        next_time = system.get_next_watering_time(zone)
    return {"zone": zone, "nextWatering": local_isoformat(next_time) if next_time else None}


@router.post("/schedules/reset")
async def reset_schedules(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    with _translate_errors():
        await system.schedule.reset_to_defaults()
    return {"schedules": system.schedule.get_schedule_info()}


@router.post("/schedules/restart")
async def restart_schedules(system: IrrigationSystem = Depends(get_system)) -> dict[str, Any]:
    started = await system.schedule.restart_all()
    return {"started": started}


@router.get("/events")
async def list_events(
    limit: int = Query(default=50, ge=1, le=500),
    event_type: str | None = Query(default=None, alias="type"),
    system: IrrigationSystem = Depends(get_system),
) -> dict[str, Any]:
    return {"events": system.notifier.list_events(limit=limit, event_type=event_type)}
