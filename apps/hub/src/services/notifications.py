from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Literal, Optional, Set

import httpx

logger = logging.getLogger("irrigation.hub.notifications")

EventKind = Literal[
    "watering_started",
    "watering_stopped",
    "automatic_watering",
    "scheduled_watering",
    "scheduled_watering_failed",
    "schedule_updated",
    "oversaturated",
    "sensor_unreliable",
    "sensor_error",
    "hardware_error",
    "system",
]

SEVERITY_BY_KIND: Dict[str, str] = {
    "scheduled_watering_failed": "warning",
    "oversaturated": "warning",
    "sensor_unreliable": "warning",
    "sensor_error": "error",
    "hardware_error": "critical",
}


def _isoformat(value: datetime) -> str:
    iso = value.astimezone(timezone.utc).isoformat(timespec="seconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


@dataclass(slots=True)
class NotificationEvent:
    timestamp: str
    event_type: str
    severity: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class NotificationService:
    """Fire-and-forget notification sink.

    ``notify`` never raises and never blocks actuation: events are kept in a
    bounded in-memory log and, when a webhook is configured, posted from a
    background task whose failures are only logged.
    """

    def __init__(
        self,
        *,
        webhook_url: str | None = None,
        timeout: float = 5.0,
        history_limit: int = 200,
    ) -> None:
        self._events: Deque[NotificationEvent] = deque(maxlen=max(10, history_limit))
        self._webhook_url = webhook_url or None
        self._timeout = timeout
        self._http_client: httpx.AsyncClient | None = None
        self._pending: Set[asyncio.Task[None]] = set()

    def notify(self, event_kind: EventKind | str, payload: Optional[Dict[str, Any]] = None) -> None:
        event = NotificationEvent(
            timestamp=_isoformat(datetime.now(timezone.utc)),
            event_type=event_kind,
            severity=SEVERITY_BY_KIND.get(event_kind, "info"),
            payload=dict(payload or {}),
        )
        self._events.append(event)
        if not self._webhook_url:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; webhook delivery skipped for %s", event_kind)
            return
        task = loop.create_task(self._deliver(event), name=f"notify-{event_kind}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def list_events(self, *, limit: int = 50, event_type: str | None = None) -> List[Dict[str, object]]:
        snapshot = list(self._events)
        if event_type:
            snapshot = [event for event in snapshot if event.event_type == event_type]
        if limit > 0:
            snapshot = snapshot[-limit:]
        return [event.to_dict() for event in snapshot]

    def clear(self) -> None:
        self._events.clear()

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _deliver(self, event: NotificationEvent) -> None:
        try:
            client = await self._get_http_client()
            response = await client.post(self._webhook_url, json=event.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Notification delivery for %s failed: %s", event.event_type, exc)
        except Exception as exc:  # pragma: no cover - delivery must never surface
            logger.warning("Unexpected notification failure for %s: %s", event.event_type, exc, exc_info=True)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client


__all__ = ["EventKind", "NotificationEvent", "NotificationService"]
