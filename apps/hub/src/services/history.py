from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional

from services.storage import PersistenceError

HistoryKind = Literal["watering_started", "watering_stopped", "scheduled_watering", "sensor_reading"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_iso(timestamp: datetime) -> str:
    iso = timestamp.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


@dataclass(slots=True)
class HistoryEntry:
    kind: HistoryKind
    zone: int
    timestamp: str = field(default_factory=lambda: _ensure_iso(_utc_now()))
    status: Optional[str] = None
    raw_value: Optional[float] = None
    moisture_percent: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.kind, "zone": self.zone, "timestamp": self.timestamp}
        if self.status is not None:
            payload["status"] = self.status
        if self.raw_value is not None:
            payload["rawValue"] = self.raw_value
        if self.moisture_percent is not None:
            payload["moisturePercent"] = self.moisture_percent
        payload.update(self.details)
        return payload


class HistoryStore:
    """Append-only watering and sensor log kept in SQLite and capped at ``max_rows``."""

    def __init__(self, *, db_path: Path, max_rows: int = 1000) -> None:
        self._db_path = Path(db_path)
        self._max_rows = max(max_rows, 10)
        self._lock = asyncio.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._session() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    zone INTEGER NOT NULL,
                    ts TEXT NOT NULL,
                    status TEXT,
                    raw_value REAL,
                    moisture_percent INTEGER,
                    details TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_zone_kind ON history(zone, kind, id);")
            conn.commit()

    async def append_entry(self, entry: HistoryEntry) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._insert_row, entry)
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to append history entry: {exc}") from exc

    def _insert_row(self, entry: HistoryEntry) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO history (kind, zone, ts, status, raw_value, moisture_percent, details)
                VALUES (:kind, :zone, :ts, :status, :raw_value, :moisture_percent, :details);
                """,
                {
                    "kind": entry.kind,
                    "zone": entry.zone,
                    "ts": entry.timestamp,
                    "status": entry.status,
                    "raw_value": entry.raw_value,
                    "moisture_percent": entry.moisture_percent,
                    "details": json.dumps(entry.details, separators=(",", ":")) if entry.details else None,
                },
            )
            total_rows = conn.execute("SELECT COUNT(1) FROM history").fetchone()[0]
            if total_rows > self._max_rows:
                surplus = total_rows - self._max_rows
                conn.execute(
                    "DELETE FROM history WHERE id IN (SELECT id FROM history ORDER BY id ASC LIMIT ?);",
                    (surplus,),
                )
            conn.commit()

    async def query_recent(
        self,
        zone: int,
        kind: HistoryKind,
        limit: int,
        *,
        exclude_statuses: Iterable[str] = (),
    ) -> List[HistoryEntry]:
        """Return up to ``limit`` entries for ``zone`` and ``kind``, most recent first."""
        if limit <= 0:
            return []
        excluded = tuple(exclude_statuses)
        async with self._lock:
            try:
                return await asyncio.to_thread(self._select_recent, zone, kind, limit, excluded)
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to read history: {exc}") from exc

    def _select_recent(self, zone: int, kind: str, limit: int, excluded: tuple[str, ...]) -> List[HistoryEntry]:
        query = "SELECT kind, zone, ts, status, raw_value, moisture_percent, details FROM history WHERE zone = ? AND kind = ?"
        params: list[Any] = [zone, kind]
        if excluded:
            placeholders = ",".join("?" for _ in excluded)
            query += f" AND (status IS NULL OR status NOT IN ({placeholders}))"
            params.extend(excluded)
        query += " ORDER BY id DESC LIMIT ?;"
        params.append(limit)
        with self._session() as conn:
            return [self._row_to_entry(row) for row in conn.execute(query, params)]

    async def list_recent(self, *, limit: int = 100, zone: Optional[int] = None) -> List[HistoryEntry]:
        clamped = max(1, min(limit, self._max_rows))
        async with self._lock:
            try:
                return await asyncio.to_thread(self._select_all, clamped, zone)
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to read history: {exc}") from exc

    def _select_all(self, limit: int, zone: Optional[int]) -> List[HistoryEntry]:
        with self._session() as conn:
            if zone is None:
                cursor = conn.execute(
                    "SELECT kind, zone, ts, status, raw_value, moisture_percent, details FROM history "
                    "ORDER BY id DESC LIMIT ?;",
                    (limit,),
                )
            else:
                cursor = conn.execute(
                    "SELECT kind, zone, ts, status, raw_value, moisture_percent, details FROM history "
                    "WHERE zone = ? ORDER BY id DESC LIMIT ?;",
                    (zone, limit),
                )
            return [self._row_to_entry(row) for row in cursor]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> HistoryEntry:
        details: Dict[str, Any] = {}
        if row["details"]:
            try:
                decoded = json.loads(row["details"])
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                details = decoded
        return HistoryEntry(
            kind=row["kind"],
            zone=row["zone"],
            timestamp=row["ts"],
            status=row["status"],
            raw_value=row["raw_value"],
            moisture_percent=row["moisture_percent"],
            details=details,
        )

    async def clear(self) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._truncate)
            except sqlite3.Error as exc:
                raise PersistenceError(f"failed to clear history: {exc}") from exc

    def _truncate(self) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM history;")
            conn.commit()


__all__ = ["HistoryEntry", "HistoryKind", "HistoryStore"]
