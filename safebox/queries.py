"""
Read side: chart aggregation and the generic explorer query.

Both only read from the store and take no device locks, so they never hold up
ingestion. The store gives no ordering guarantee; everything here sorts for
itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import groupby
from statistics import fmean
from typing import Any, Callable, Iterator, Mapping, Sequence

from .errors import PersistenceError
from .schemas import (
    EventLogEntry, RecordKind, RotationSample, SENSOR_ALIASES, STATUS_ALIASES, SensorSample, StatusRecord,
)
from .settings import settings
from .store import TelemetryStore
from .utils import isoformat_z, utcnow

log = logging.getLogger("queries")

# ---------------- charts ----------------
GRANULARITIES = {
    "hour": timedelta(hours=1),
    "minute": timedelta(minutes=1),
    "second": timedelta(seconds=1),
}

def truncate(ts: datetime, granularity: str) -> datetime:
    if granularity == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    if granularity == "minute":
        return ts.replace(second=0, microsecond=0)
    return ts.replace(microsecond=0)

@dataclass(frozen=True)
class ChartWindow:
    start: datetime
    end: datetime
    granularity: str = "second"
    fields: tuple[str, ...] = ("tilt", "vibration")
    fill_gaps: bool = False

    @classmethod
    def last_hours(cls, hours: float, now: datetime | None = None, **kw) -> "ChartWindow":
        end = now or utcnow()
        return cls(start=end - timedelta(hours=hours), end=end, **kw)

@dataclass(frozen=True)
class ChartBucket:
    bucket: datetime
    values: dict[str, float | None]

    def to_dict(self, keys: Mapping[str, str] | None = None) -> dict[str, Any]:
        keys = keys or {}
        return {"t": isoformat_z(self.bucket), **{keys.get(k, k): v for k, v in self.values.items()}}

class ChartSeries:
    """Buckets of per-field averages, ascending by bucket time.

    Iterating makes a single lazy pass over the samples; the series can be
    iterated again from the start.
    """

    def __init__(self, samples: Sequence[SensorSample], granularity: str, fields: Sequence[str], fill_gaps: bool = False):
        self._samples = sorted(samples, key=lambda s: s.timestamp)
        self.granularity = granularity
        self.fields = tuple(fields)
        self.fill_gaps = fill_gaps

    def __iter__(self) -> Iterator[ChartBucket]:
        step = GRANULARITIES[self.granularity]
        prev = None
        for bucket, group in groupby(self._samples, key=lambda s: truncate(s.timestamp, self.granularity)):
            if self.fill_gaps and prev is not None:
                gap = prev + step
                while gap < bucket:
                    yield ChartBucket(gap, {f: None for f in self.fields})
                    gap += step
            values: dict[str, list[float]] = {f: [] for f in self.fields}
            for s in group:
                values.setdefault(s.sensor_type.value, []).append(s.value)
            yield ChartBucket(bucket, {f: round(fmean(values[f]), 2) if values[f] else None for f in self.fields})
            prev = bucket

def chart_series(store: TelemetryStore, device_id: str | None, window: ChartWindow) -> ChartSeries:
    if window.granularity not in GRANULARITIES:
        raise ValueError(f"unknown granularity {window.granularity!r}")
    samples: list[SensorSample] = []
    for f in window.fields:
        samples.extend(store.query_range(RecordKind.sensor, device_id, window.start, window.end, {"sensor_type": f}))
    return ChartSeries(samples, window.granularity, window.fields, window.fill_gaps)

# ---------------- explorer ----------------
class ExplorerQueryError(ValueError):
    pass

def _sensor_row(s: SensorSample) -> dict[str, Any]:
    return {"timestamp": s.timestamp, "sensorType": s.sensor_type.value, "value": s.value,
            "unit": s.unit, "deviceId": s.device_id}

def _status_row(s: StatusRecord) -> dict[str, Any]:
    return {"timestamp": s.timestamp, "status": s.status.value, "deviceId": s.device_id}

def _rotation_row(r: RotationSample) -> dict[str, Any]:
    return {"timestamp": r.timestamp, "alpha": r.alpha, "beta": r.beta, "gamma": r.gamma, "deviceId": r.device_id}

def _event_row(e: EventLogEntry) -> dict[str, Any]:
    return {"timestamp": e.timestamp, "type": e.type, "content": e.content,
            "severity": e.severity.value, "deviceId": e.device_id}

FORMATTERS: dict[RecordKind, Callable[[Any], dict[str, Any]]] = {
    RecordKind.sensor: _sensor_row,
    RecordKind.status: _status_row,
    RecordKind.rotation: _rotation_row,
    RecordKind.event: _event_row,
}

COLUMNS = {
    RecordKind.sensor: ("timestamp", "sensorType", "value", "unit", "deviceId"),
    RecordKind.status: ("timestamp", "status", "deviceId"),
    RecordKind.rotation: ("timestamp", "alpha", "beta", "gamma", "deviceId"),
    RecordKind.event: ("timestamp", "type", "content", "severity", "deviceId"),
}

# explorer filter name -> store column, per kind (deviceId is handled separately)
FILTERS = {
    RecordKind.sensor: {"deviceId": "device_id", "sensorType": "sensor_type", "unit": "unit"},
    RecordKind.status: {"deviceId": "device_id", "status": "status"},
    RecordKind.rotation: {"deviceId": "device_id"},
    RecordKind.event: {"deviceId": "device_id", "eventType": "type", "severity": "severity"},
}

_FILTER_ALIASES = {"sensor_type": SENSOR_ALIASES, "status": STATUS_ALIASES}

NUMERIC_FIELDS = {"value", "alpha", "beta", "gamma"}

@dataclass
class ExplorerQuery:
    kind: RecordKind
    start: datetime | None = None
    end: datetime | None = None
    filters: dict[str, str] = field(default_factory=dict)
    sort_field: str = "timestamp"
    sort_dir: str = "desc"
    limit: int = 50
    offset: int = 0
    search: str | None = None

@dataclass
class ExplorerResult:
    success: bool
    data: list[dict[str, Any]]
    total: int
    error: str | None = None

def _canonical(row: Mapping[str, Any]):
    return (row["timestamp"], tuple((k, str(v)) for k, v in sorted(row.items()) if k != "timestamp"))

def _sort_key(name: str, value: Any):
    if name == "timestamp":
        return value
    if name in NUMERIC_FIELDS:
        return float(value)
    return str(value)

def _matches(row: Mapping[str, Any], needle: str) -> bool:
    return any(
        isinstance(v, str) and needle in v.lower()
        for v in row.values()
    )

def order_rows(rows: list[dict[str, Any]], sort_field: str, sort_dir: str) -> list[dict[str, Any]]:
    """Deterministic order for rows that arrived in any order; missing values last."""
    rows = sorted(rows, key=_canonical)
    present = [r for r in rows if r.get(sort_field) is not None]
    missing = [r for r in rows if r.get(sort_field) is None]
    present.sort(key=lambda r: _sort_key(sort_field, r[sort_field]), reverse=(sort_dir == "desc"))
    return present + missing

def _validate(q: ExplorerQuery, now: datetime) -> tuple[datetime, datetime | None, str | None, dict[str, str]]:
    allowed = FILTERS[q.kind]
    unknown = sorted(set(q.filters) - set(allowed))
    if unknown:
        raise ExplorerQueryError(f"unknown filter(s) for {q.kind.value}: {', '.join(unknown)}")
    if q.sort_field not in COLUMNS[q.kind]:
        raise ExplorerQueryError(f"cannot sort {q.kind.value} by {q.sort_field!r}")
    if q.sort_dir not in ("asc", "desc"):
        raise ExplorerQueryError(f"sort direction must be asc or desc, got {q.sort_dir!r}")
    if q.limit < 1 or q.limit > 1000:
        raise ExplorerQueryError("limit must be between 1 and 1000")
    if q.offset < 0:
        raise ExplorerQueryError("offset must not be negative")

    # no end given: open-ended, so records stamped ahead of the wall clock still show
    end = q.end
    start = q.start or (end or now) - timedelta(days=settings.explorer_default_days)
    if end is not None and start > end:
        raise ExplorerQueryError("start is after end")

    device_id = None
    store_filters: dict[str, str] = {}
    for name, value in q.filters.items():
        column = allowed[name]
        if column == "device_id":
            device_id = value
            continue
        value = value.strip().lower() if column in _FILTER_ALIASES else value
        store_filters[column] = _FILTER_ALIASES.get(column, {}).get(value, value)
    return start, end, device_id, store_filters

def explore(store: TelemetryStore, q: ExplorerQuery, now: datetime | None = None) -> ExplorerResult:
    try:
        start, end, device_id, filters = _validate(q, now or utcnow())
        records = store.query_range(q.kind, device_id, start, end, filters)
    except (ExplorerQueryError, PersistenceError) as e:
        log.warning("explorer query on %s failed: %s", q.kind.value, e)
        return ExplorerResult(success=False, data=[], total=0, error=str(e))

    rows = [FORMATTERS[q.kind](r) for r in records]
    if q.search:
        needle = q.search.lower()
        rows = [r for r in rows if _matches(r, needle)]
    rows = order_rows(rows, q.sort_field, q.sort_dir)
    return ExplorerResult(success=True, data=rows[q.offset:q.offset + q.limit], total=len(rows))

def recent_events(store: TelemetryStore, device_id: str | None, limit: int = 50,
                  days: int | None = None, now: datetime | None = None) -> list[EventLogEntry]:
    """Persisted events, newest first."""
    start = (now or utcnow()) - timedelta(days=days or settings.explorer_default_days)
    events = store.query_range(RecordKind.event, device_id, start, None)
    return sorted(events, key=lambda e: e.timestamp, reverse=True)[:limit]
