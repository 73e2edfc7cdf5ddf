"""
The ingestion pipeline shared by the REST routes and the MQTT subscriber:

    payload -> Normalizer -> (device lock) EventDeriver -> store appends -> live feed
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from queue import Full, Queue
from typing import Any, Mapping, Optional

from .events import EventDeriver, default_rules
from .ingest import Normalizer, NormalizedRecord
from .queries import FORMATTERS
from .schemas import EventLogEntry, RecordKind
from .settings import Settings, settings as default_settings
from .state import DeviceStateStore
from .store import TelemetryStore
from .utils import isoformat_z, utcnow

log = logging.getLogger("ingest")

_APPEND = {
    RecordKind.sensor: lambda store, r: store.append_sample(r),
    RecordKind.status: lambda store, r: store.append_status(r),
    RecordKind.rotation: lambda store, r: store.append_rotation(r),
}

@dataclass(frozen=True)
class IngestResult:
    record: NormalizedRecord
    event: Optional[EventLogEntry]

def record_row(kind: RecordKind, record) -> dict[str, Any]:
    row = FORMATTERS[kind](record)
    row["timestamp"] = isoformat_z(row["timestamp"])
    return row

def live_message(kind: RecordKind, record) -> str:
    return json.dumps({**record_row(kind, record), "kind": kind.value})

class TelemetryService:
    def __init__(
        self,
        store: TelemetryStore,
        state: DeviceStateStore | None = None,
        cfg: Settings = default_settings,
        clock=utcnow,
        live: Queue | None = None,
    ):
        self.store = store
        self.state = state or DeviceStateStore()
        self.normalizer = Normalizer(self.state, clock=clock)
        self.deriver = EventDeriver(self.state, default_rules(cfg), cfg.alert_cooldown_seconds, clock=clock)
        self.live = live

    def handle(self, kind: RecordKind | str, payload: Mapping[str, Any]) -> IngestResult:
        """Validate, derive and persist one payload.

        Raises IngestValidationError for a bad payload and PersistenceError if
        an append fails. The in-memory transition stays applied either way.
        """
        rec = self.normalizer.ingest(kind, payload)
        with self.state.locked(rec.device_id):
            event = self.deriver.observe(rec)
            try:
                _APPEND[rec.kind](self.store, rec.record)
            finally:
                # the transition is already applied, so its event is written regardless
                if event is not None:
                    self.store.append_event(event)
        self._push(rec.kind, rec.record)
        if event is not None:
            self._push(RecordKind.event, event)
        return IngestResult(record=rec, event=event)

    def _push(self, kind: RecordKind, record) -> None:
        if self.live is None:
            return
        try:
            self.live.put_nowait(live_message(kind, record))
        except Full:
            log.debug("live feed full, dropping %s message", kind.value)
