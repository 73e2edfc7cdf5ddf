"""
Ingestion normalizer: turn a raw sensor/status/rotation payload from MQTT or
REST into an immutable record, or reject it with ``IngestValidationError``.
A successful ingest counts as a heartbeat for the device.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ValidationError

from .errors import IngestValidationError
from .schemas import RecordKind, RotationSample, SensorSample, StatusRecord
from .state import DeviceStateStore
from .utils import parse_ts, to_naive_utc, utcnow

log = logging.getLogger("ingest")

Clock = Callable[[], datetime]

SCHEMAS: dict[RecordKind, type[BaseModel]] = {
    RecordKind.sensor: SensorSample,
    RecordKind.status: StatusRecord,
    RecordKind.rotation: RotationSample,
}

_ERROR_KINDS = {
    "missing": IngestValidationError.MISSING_FIELD,
    "string_too_short": IngestValidationError.MISSING_FIELD,
    "enum": IngestValidationError.INVALID_ENUM,
    "literal_error": IngestValidationError.INVALID_ENUM,
}

@dataclass(frozen=True)
class NormalizedRecord:
    kind: RecordKind
    record: SensorSample | StatusRecord | RotationSample
    received_at: datetime

    @property
    def device_id(self) -> str:
        return self.record.device_id

    @property
    def timestamp(self) -> datetime:
        return self.record.timestamp

def _translate(err: ValidationError) -> IngestValidationError:
    first = err.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ())) or None
    kind = _ERROR_KINDS.get(first.get("type", ""), IngestValidationError.WRONG_TYPE)
    return IngestValidationError(kind, field, f"{field or 'payload'}: {first.get('msg', 'invalid value')}")

def _timestamp(raw: Any, received_at: datetime) -> datetime:
    if raw is None:
        return received_at
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if not math.isfinite(raw):
            raise IngestValidationError(IngestValidationError.WRONG_TYPE, "timestamp", "timestamp: not finite")
        # epoch milliseconds from gateways that send Date.now()
        secs = raw / 1000.0 if raw > 1e11 else float(raw)
        try:
            return to_naive_utc(datetime.fromtimestamp(secs, tz=timezone.utc))
        except (OverflowError, ValueError, OSError) as e:
            raise IngestValidationError(IngestValidationError.WRONG_TYPE, "timestamp", f"timestamp: {e}") from None
    try:
        return parse_ts(raw)
    except (ValueError, OverflowError) as e:
        raise IngestValidationError(IngestValidationError.WRONG_TYPE, "timestamp", f"timestamp: {e}") from None

class Normalizer:
    def __init__(self, state: DeviceStateStore, clock: Clock = utcnow):
        self.state = state
        self.clock = clock

    def ingest(self, kind: RecordKind | str, payload: Mapping[str, Any]) -> NormalizedRecord:
        try:
            kind = RecordKind(kind)
        except ValueError:
            raise IngestValidationError(IngestValidationError.INVALID_ENUM, "kind", f"unknown record kind {kind!r}") from None
        schema = SCHEMAS.get(kind)
        if schema is None:
            raise IngestValidationError(IngestValidationError.INVALID_ENUM, "kind", f"{kind.value} records are not ingested")
        if not isinstance(payload, Mapping):
            raise IngestValidationError(IngestValidationError.WRONG_TYPE, None, "payload must be a JSON object")

        received_at = self.clock()
        data = dict(payload)
        raw_ts = data.pop("timestamp", None)
        if raw_ts is None:
            raw_ts = data.pop("ts", None)
        data["timestamp"] = _timestamp(raw_ts, received_at)

        try:
            record = schema.model_validate(data)
        except ValidationError as e:
            raise _translate(e) from None

        self.state.touch(record.device_id, received_at)
        return NormalizedRecord(kind=kind, record=record, received_at=received_at)
