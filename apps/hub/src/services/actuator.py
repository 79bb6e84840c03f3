from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional

from hardware.ports import HardwareError, RelayPort
from services.actuator_state import ActuatorState, ActuatorStateStore
from services.history import HistoryEntry, HistoryStore
from services.notifications import NotificationService
from services.storage import PersistenceError, SettingsStore
from services.zones import validate_zone

logger = logging.getLogger("irrigation.hub.actuator")

WateringCause = Literal["manual", "scheduled"]
StartRejectReason = Literal[
    "invalid_duration",
    "relay_unavailable",
    "disabled",
    "already_watering",
    "cooldown",
    "daily_limit",
    "relay_error",
]
StopRejectReason = Literal["relay_unavailable", "not_watering", "relay_error"]

REJECT_MESSAGES: Dict[str, str] = {
    "invalid_duration": "watering duration must be positive",
    "relay_unavailable": "relay is not initialised",
    "disabled": "zone is disabled",
    "already_watering": "zone is already watering",
    "cooldown": "manual cooldown has not elapsed",
    "daily_limit": "daily manual watering limit reached",
    "relay_error": "relay did not respond",
    "not_watering": "zone is not watering",
}

Clock = Callable[[], int]


def system_clock_ms() -> int:
    return int(time.time() * 1000)


def local_date(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000.0).date().isoformat()


@dataclass(frozen=True, slots=True)
class StartResult:
    zone: int
    started: bool
    reason: Optional[StartRejectReason] = None
    retry_after_ms: Optional[int] = None

    def __bool__(self) -> bool:
        return self.started

    @property
    def message(self) -> str:
        if self.started:
            return f"zone {self.zone} watering started"
        return REJECT_MESSAGES.get(self.reason or "", "rejected")


@dataclass(frozen=True, slots=True)
class StopResult:
    zone: int
    stopped: bool
    reason: Optional[StopRejectReason] = None

    def __bool__(self) -> bool:
        return self.stopped

    @property
    def message(self) -> str:
        if self.stopped:
            return f"zone {self.zone} watering stopped"
        return REJECT_MESSAGES.get(self.reason or "", "rejected")


@dataclass(slots=True)
class _ZoneSlot:
    zone: int
    state: ActuatorState
    relay_ready: bool = False
    shutoff_task: Optional[asyncio.Task[None]] = field(default=None, repr=False)
    watering_until_ms: Optional[int] = None
    cause: Optional[WateringCause] = None


class ZoneActuator:
    """Single arbiter of relay actuation for every zone.

    Each zone is either Idle or Watering. The Idle check and the transition
    to Watering in ``start_watering`` run without an ``await`` in between,
    so concurrent callers on the same event loop can never both start a zone.
    """

    def __init__(
        self,
        *,
        relays: RelayPort,
        settings_store: SettingsStore,
        state_store: ActuatorStateStore,
        history: HistoryStore,
        notifier: Optional[NotificationService] = None,
        manual_cooldown_ms: int = 300_000,
        max_daily_manual: Optional[int] = None,
        reset_poll_seconds: float = 60.0,
        clock: Clock = system_clock_ms,
    ) -> None:
        self._relays = relays
        self._settings = settings_store
        self._state_store = state_store
        self._history = history
        self._notifier = notifier
        self._zone_count = settings_store.zone_count
        self._manual_cooldown_ms = max(0, int(manual_cooldown_ms))
        self._max_daily_manual = max_daily_manual
        self._reset_poll_seconds = max(0.01, float(reset_poll_seconds))
        self._clock = clock
        self._slots: List[_ZoneSlot] = [_ZoneSlot(zone=index, state=ActuatorState()) for index in range(self._zone_count)]
        self._reset_task: Optional[asyncio.Task[None]] = None
        self._initialized = False

    @property
    def zone_count(self) -> int:
        return self._zone_count

    def initialize(self) -> None:
        """Restore persisted counters and force every relay off."""
        now_ms = self._clock()
        today = local_date(now_ms)
        loaded = self._state_store.load_actuator_state()
        for slot in self._slots:
            persisted = loaded[slot.zone] if loaded is not None and slot.zone < len(loaded) else None
            state = ActuatorState(last_reset_date=today)
            if persisted is not None:
                if persisted.is_watering:
                    logger.warning("Zone %d was watering when the hub stopped; forcing relay off", slot.zone)
                state.last_watering_start_ms = persisted.last_watering_start_ms
                if persisted.last_reset_date == today:
                    state.daily_watering_count = persisted.daily_watering_count
            slot.state = state
            slot.relay_ready = False
            try:
                self._relays.setup(slot.zone)
                self._relays.set_output(slot.zone, False)
            except HardwareError as exc:
                logger.error("Relay for zone %d could not be initialised: %s", slot.zone, exc)
                self._notify("hardware_error", {"zone": slot.zone, "detail": str(exc)})
                continue
            slot.relay_ready = True
        self._initialized = True
        self._persist()
        logger.info(
            "Actuator initialised: %d/%d relays ready",
            sum(1 for slot in self._slots if slot.relay_ready),
            self._zone_count,
        )

    async def start(self) -> None:
        if not self._initialized:
            self.initialize()
        if self._reset_task is not None and not self._reset_task.done():
            return
        self._reset_task = asyncio.create_task(self._daily_reset_loop(), name="actuator-daily-reset")

    async def shutdown(self) -> None:
        stopped = await self.stop_all()
        if stopped:
            logger.info("Stopped %d active zone(s) during shutdown", stopped)
        task = self._reset_task
        self._reset_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for slot in self._slots:
            self._cancel_shutoff(slot)
            if not slot.relay_ready:
                continue
            try:
                self._relays.release(slot.zone)
            except HardwareError as exc:
                logger.error("Failed to release relay for zone %d: %s", slot.zone, exc)
            slot.relay_ready = False
        self._initialized = False

    async def start_watering(
        self,
        zone: int,
        duration_ms: int,
        cause: WateringCause = "manual",
    ) -> StartResult:
        validate_zone(zone, self._zone_count)
        slot = self._slots[zone]
        if duration_ms is None or duration_ms <= 0:
            return self._reject(zone, "invalid_duration")
        if not slot.relay_ready:
            return self._reject(zone, "relay_unavailable")
        config = self._settings.get_zone(zone)
        if not config.enabled:
            return self._reject(zone, "disabled")
        if slot.state.is_watering:
            return self._reject(zone, "already_watering")

        now_ms = self._clock()
        if cause == "manual":
            last_start = slot.state.last_watering_start_ms
            if last_start is not None and now_ms - last_start < self._manual_cooldown_ms:
                elapsed = now_ms - last_start
                return self._reject(zone, "cooldown", retry_after_ms=self._manual_cooldown_ms - elapsed)
            self.check_daily_reset()
            if self._max_daily_manual is not None and slot.state.daily_watering_count >= self._max_daily_manual:
                return self._reject(zone, "daily_limit")

        try:
            self._relays.set_output(zone, True)
        except HardwareError as exc:
            logger.error("Zone %d relay failed to switch on: %s", zone, exc)
            self._notify("hardware_error", {"zone": zone, "detail": str(exc)})
            return self._reject(zone, "relay_error")

        # Transition to Watering before the first suspension point.
        slot.state.is_watering = True
        slot.state.last_watering_start_ms = now_ms
        if cause == "manual":
            slot.state.daily_watering_count += 1
        slot.cause = cause
        slot.watering_until_ms = now_ms + int(duration_ms)
        slot.shutoff_task = asyncio.create_task(
            self._auto_shutoff(zone, duration_ms),
            name=f"zone-{zone}-auto-shutoff",
        )
        self._persist()
        logger.info("Zone %d (%s) watering started: %s, %d ms", zone, config.name, cause, duration_ms)

        await self._append_history(
            HistoryEntry(
                kind="watering_started",
                zone=zone,
                details={"cause": cause, "durationMs": int(duration_ms)},
            )
        )
        self._notify(
            "watering_started",
            {"zone": zone, "name": config.name, "cause": cause, "durationMs": int(duration_ms)},
        )
        return StartResult(zone=zone, started=True)

    async def stop_watering(self, zone: int, automatic: bool = False) -> StopResult:
        validate_zone(zone, self._zone_count)
        slot = self._slots[zone]
        if not slot.relay_ready:
            return StopResult(zone=zone, stopped=False, reason="relay_unavailable")
        if not slot.state.is_watering:
            return StopResult(zone=zone, stopped=False, reason="not_watering")

        try:
            self._relays.set_output(zone, False)
        except HardwareError as exc:
            logger.error("Zone %d relay failed to switch off: %s", zone, exc)
            self._notify("hardware_error", {"zone": zone, "detail": str(exc)})
            return StopResult(zone=zone, stopped=False, reason="relay_error")

        slot.state.is_watering = False
        cause = slot.cause
        slot.cause = None
        slot.watering_until_ms = None
        self._cancel_shutoff(slot)
        self._persist()
        logger.info("Zone %d watering stopped (%s)", zone, "automatic" if automatic else "requested")

        await self._append_history(
            HistoryEntry(
                kind="watering_stopped",
                zone=zone,
                details={"automatic": automatic, "cause": cause},
            )
        )
        self._notify("watering_stopped", {"zone": zone, "automatic": automatic})
        return StopResult(zone=zone, stopped=True)

    async def stop_all(self) -> int:
        stopped = 0
        for slot in self._slots:
            if not slot.state.is_watering:
                continue
            result = await self.stop_watering(slot.zone, automatic=False)
            if result.stopped:
                stopped += 1
        return stopped

    def check_daily_reset(self) -> bool:
        """Zero the daily counters once the calendar date has moved on."""
        today = local_date(self._clock())
        changed = False
        for slot in self._slots:
            if slot.state.last_reset_date != today:
                slot.state.daily_watering_count = 0
                slot.state.last_reset_date = today
                changed = True
        if changed:
            logger.info("Daily watering counters reset for %s", today)
            self._persist()
        return changed

    def is_watering(self, zone: int) -> bool:
        validate_zone(zone, self._zone_count)
        return self._slots[zone].state.is_watering

    def get_state(self, zone: int) -> ActuatorState:
        validate_zone(zone, self._zone_count)
        state = self._slots[zone].state
        return ActuatorState(
            is_watering=state.is_watering,
            last_watering_start_ms=state.last_watering_start_ms,
            daily_watering_count=state.daily_watering_count,
            last_reset_date=state.last_reset_date,
        )

    def get_zone_states(self) -> List[Dict[str, Any]]:
        now_ms = self._clock()
        zones = self._settings.load_settings()
        snapshot: List[Dict[str, Any]] = []
        for slot in self._slots:
            state = slot.state
            remaining = 0
            if state.last_watering_start_ms is not None:
                remaining = max(0, self._manual_cooldown_ms - (now_ms - state.last_watering_start_ms))
            payload = {"zone": slot.zone, "name": zones[slot.zone].name, "relayReady": slot.relay_ready}
            payload.update(state.to_payload())
            payload["cooldownRemainingMs"] = remaining
            payload["wateringUntilMillis"] = slot.watering_until_ms
            snapshot.append(payload)
        return snapshot

    async def _auto_shutoff(self, zone: int, duration_ms: int) -> None:
        await asyncio.sleep(duration_ms / 1000.0)
        result = await self.stop_watering(zone, automatic=True)
        if not result.stopped:
            logger.debug("Auto-shutoff for zone %d was a no-op (%s)", zone, result.reason)

    async def _daily_reset_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reset_poll_seconds)
            try:
                self.check_daily_reset()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.warning("Daily reset check failed: %s", exc)

    def _cancel_shutoff(self, slot: _ZoneSlot) -> None:
        task = slot.shutoff_task
        slot.shutoff_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _reject(
        self,
        zone: int,
        reason: StartRejectReason,
        *,
        retry_after_ms: Optional[int] = None,
    ) -> StartResult:
        if reason == "cooldown" and retry_after_ms is not None:
            logger.info("Zone %d start rejected: %s (%d s remaining)", zone, reason, retry_after_ms // 1000)
        else:
            logger.info("Zone %d start rejected: %s", zone, reason)
        return StartResult(zone=zone, started=False, reason=reason, retry_after_ms=retry_after_ms)

    def _persist(self) -> None:
        try:
            self._state_store.save_actuator_state(slot.state for slot in self._slots)
        except PersistenceError as exc:
            logger.error("Failed to persist actuator state: %s", exc)

    async def _append_history(self, entry: HistoryEntry) -> None:
        try:
            await self._history.append_entry(entry)
        except PersistenceError as exc:
            logger.error("Failed to append %s history for zone %d: %s", entry.kind, entry.zone, exc)

    def _notify(self, event_kind: str, payload: Dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(event_kind, payload)
        except Exception as exc:  # pragma: no cover - sink failures never affect actuation
            logger.warning("Notification %s failed: %s", event_kind, exc)


__all__ = [
    "StartResult",
    "StopResult",
    "WateringCause",
    "ZoneActuator",
    "local_date",
    "system_clock_ms",
]
