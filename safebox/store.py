"""
Persistence collaborator.

The core only talks to a ``TelemetryStore``: append the four record kinds,
read a time range back (in no particular order), and fetch the newest record
of a kind. ``SqlStore`` is the SQLModel-backed implementation used by the
service. Every call is bounded by a timeout so a stuck database surfaces as
``PersistenceTimeout`` instead of hanging a request or the MQTT loop.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Mapping, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .db import get_session
from .errors import PersistenceError, PersistenceTimeout
from .models import Command, EventLog, RotationLog, SensorLog, StatusLog
from .schemas import EventLogEntry, RecordKind, RotationSample, SensorSample, StatusRecord

log = logging.getLogger("store")

Record = SensorSample | StatusRecord | RotationSample | EventLogEntry

class TelemetryStore(Protocol):
    def append_sample(self, sample: SensorSample) -> None: ...
    def append_status(self, status: StatusRecord) -> None: ...
    def append_rotation(self, rotation: RotationSample) -> None: ...
    def append_event(self, event: EventLogEntry) -> None: ...
    def query_range(
        self,
        kind: RecordKind,
        device_id: str | None,
        start: datetime,
        end: datetime | None,
        filters: Mapping[str, Any] | None = None,
    ) -> list[Record]: ...
    def latest(self, kind: RecordKind, device_id: str | None) -> Record | None: ...

# ---------------- row <-> record mapping ----------------
_TABLES = {
    RecordKind.sensor: SensorLog,
    RecordKind.status: StatusLog,
    RecordKind.rotation: RotationLog,
    RecordKind.event: EventLog,
}

# record attribute -> column, where they differ
_COLUMNS = {"timestamp": "ts"}

def _sensor_row(s: SensorSample) -> SensorLog:
    return SensorLog(device_id=s.device_id, sensor_type=s.sensor_type.value, value=s.value, unit=s.unit, ts=s.timestamp)

def _status_row(s: StatusRecord) -> StatusLog:
    return StatusLog(device_id=s.device_id, status=s.status.value, ts=s.timestamp)

def _rotation_row(r: RotationSample) -> RotationLog:
    return RotationLog(device_id=r.device_id, alpha=r.alpha, beta=r.beta, gamma=r.gamma, ts=r.timestamp)

def _event_row(e: EventLogEntry) -> EventLog:
    return EventLog(device_id=e.device_id, type=e.type, content=e.content, severity=e.severity.value, ts=e.timestamp)

def _to_record(kind: RecordKind, row) -> Record:
    if kind is RecordKind.sensor:
        return SensorSample(device_id=row.device_id, sensor_type=row.sensor_type, value=float(row.value),
                            unit=row.unit, timestamp=row.ts)
    if kind is RecordKind.status:
        return StatusRecord(device_id=row.device_id, status=row.status, timestamp=row.ts)
    if kind is RecordKind.rotation:
        return RotationSample(device_id=row.device_id, alpha=float(row.alpha), beta=float(row.beta),
                              gamma=float(row.gamma), timestamp=row.ts)
    return EventLogEntry(device_id=row.device_id, type=row.type, content=row.content,
                         severity=row.severity, timestamp=row.ts)

class SqlStore:
    def __init__(self, engine: Engine | None = None, timeout: float = 5.0, max_workers: int = 8):
        self.engine = engine
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="store")
        # a single SQLite connection must not be used from two threads at once
        sqlite = engine is not None and engine.dialect.name == "sqlite"
        self._serial = threading.Lock() if sqlite else nullcontext()

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # ---------------- plumbing ----------------
    def _run(self, fn, *args):
        def guarded():
            with self._serial:
                try:
                    return fn(*args)
                except SQLAlchemyError as e:
                    raise PersistenceError(f"{fn.__name__} failed: {e}") from e

        future = self._pool.submit(guarded)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            log.warning("%s timed out after %.1fs", fn.__name__, self.timeout)
            raise PersistenceTimeout(f"{fn.__name__} timed out after {self.timeout}s") from None

    def _add(self, row) -> None:
        with get_session(self.engine) as s:
            s.add(row)
            s.commit()

    # ---------------- appends ----------------
    def append_sample(self, sample: SensorSample) -> None:
        self._run(self._add, _sensor_row(sample))

    def append_status(self, status: StatusRecord) -> None:
        self._run(self._add, _status_row(status))

    def append_rotation(self, rotation: RotationSample) -> None:
        self._run(self._add, _rotation_row(rotation))

    def append_event(self, event: EventLogEntry) -> None:
        self._run(self._add, _event_row(event))

    # ---------------- reads ----------------
    def query_range(self, kind, device_id, start, end, filters=None) -> list[Record]:
        return self._run(self._query_range, RecordKind(kind), device_id, start, end, dict(filters or {}))

    def _query_range(self, kind: RecordKind, device_id, start, end, filters) -> list[Record]:
        table = _TABLES[kind]
        stmt = select(table).where(table.ts >= start)
        if end is not None:
            stmt = stmt.where(table.ts <= end)
        if device_id:
            stmt = stmt.where(table.device_id == device_id)
        for name, value in filters.items():
            column = getattr(table, _COLUMNS.get(name, name), None)
            if column is None:
                raise PersistenceError(f"unknown column {name!r} for {kind.value}")
            stmt = stmt.where(column == getattr(value, "value", value))
        with get_session(self.engine) as s:
            return [_to_record(kind, r) for r in s.exec(stmt).all()]

    def latest(self, kind, device_id) -> Record | None:
        return self._run(self._latest, RecordKind(kind), device_id)

    def _latest(self, kind: RecordKind, device_id) -> Record | None:
        table = _TABLES[kind]
        stmt = select(table)
        if device_id:
            stmt = stmt.where(table.device_id == device_id)
        stmt = stmt.order_by(table.ts.desc(), table.id.desc()).limit(1)
        with get_session(self.engine) as s:
            row = s.exec(stmt).first()
            return _to_record(kind, row) if row else None

    # ---------------- commands ----------------
    def record_command(self, command_id: str, device_id: str, command: str, params: dict) -> None:
        self._run(self._add, Command(command_id=command_id, device_id=device_id, command=command, params=params))

    def set_command_status(self, command_id: str, status: str) -> None:
        self._run(self._set_command_status, command_id, status)

    def _set_command_status(self, command_id: str, status: str) -> None:
        with get_session(self.engine) as s:
            row = s.exec(select(Command).where(Command.command_id == command_id)).first()
            if row:
                row.status = status
                s.add(row)
                s.commit()
