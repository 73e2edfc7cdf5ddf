import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .errors import PersistenceError
from .ingest import Clock
from .schemas import HealthOut, RecordKind
from .settings import settings
from .state import DeviceStateStore
from .store import TelemetryStore
from .utils import isoformat_z, utcnow

log = logging.getLogger("health")

OK, WARN, ERROR = "OK", "WARN", "ERROR"

def classify(age_seconds: Optional[float], ok_seconds: float, warn_seconds: float) -> str:
    if age_seconds is None:
        return WARN
    if age_seconds <= ok_seconds:
        return OK
    if age_seconds <= warn_seconds:
        return WARN
    return ERROR

@dataclass(frozen=True)
class Health:
    status: str
    last_heartbeat: Optional[datetime]
    safe_status: Optional[str] = None

    def to_out(self) -> HealthOut:
        return HealthOut(status=self.status, lastHeartbeat=isoformat_z(self.last_heartbeat), safeStatus=self.safe_status)

class HealthMonitor:
    """Liveness from heartbeat recency.

    ``source="memory"`` reads the in-process heartbeat; ``source="storage"``
    uses the newest persisted sensor sample instead. Either way the same
    (ok, warn) pair of thresholds applies.
    """

    def __init__(
        self,
        state: DeviceStateStore,
        store: TelemetryStore | None = None,
        ok_seconds: float = settings.health_ok_seconds,
        warn_seconds: float = settings.health_warn_seconds,
        source: str = settings.heartbeat_source,
        clock: Clock = utcnow,
    ):
        self.state = state
        self.store = store
        self.ok_seconds = ok_seconds
        self.warn_seconds = warn_seconds
        self.source = source
        self.clock = clock

    def report(self, device_id: str | None = None) -> Health:
        try:
            beat = self._heartbeat(device_id)
            safe_status = self._safe_status(device_id)
        except Exception:
            # health must answer even when storage does not
            log.exception("health check failed for %s", device_id or "all devices")
            return Health(status=WARN, last_heartbeat=None)
        age = (self.clock() - beat).total_seconds() if beat else None
        return Health(
            status=classify(age, self.ok_seconds, self.warn_seconds),
            last_heartbeat=beat,
            safe_status=safe_status,
        )

    def _heartbeat(self, device_id: str | None) -> Optional[datetime]:
        if self.source == "storage" and self.store is not None:
            latest = self.store.latest(RecordKind.sensor, device_id)
            return latest.timestamp if latest else None
        return self.state.last_heartbeat(device_id)

    def _safe_status(self, device_id: str | None) -> Optional[str]:
        cached = self.state.last_status(device_id)
        if cached is not None:
            return cached.status.value
        if self.store is None:
            return None
        try:
            latest = self.store.latest(RecordKind.status, device_id)
        except PersistenceError as e:
            log.warning("could not read last status: %s", e)
            return None
        return latest.status.value if latest else None
