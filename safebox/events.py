"""
Event derivation.

Raw samples and status assertions come in continuously; the event log should
only get one entry per thing that happened. For each (device, alert kind) the
deriver keeps a small state machine:

    normal --condition true--> triggered          (emits one event)
    triggered --condition false--> clearing       (quiet)
    clearing --condition true--> triggered        (quiet, same excursion)
    clearing --clear for >= cooldown--> normal    (quiet)

Status changes are simpler: an event is emitted whenever the asserted status
differs from the last one seen for that device.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .ingest import Clock, NormalizedRecord
from .schemas import EventLogEntry, RecordKind, SafeStatus, SensorSample, SensorType, Severity, StatusRecord
from .settings import Settings, settings as default_settings
from .state import AlertState, DeviceState, DeviceStateStore, LastStatus
from .utils import utcnow

log = logging.getLogger("events")

@dataclass(frozen=True)
class AlertRule:
    kind: str
    sensor_type: SensorType
    threshold: float
    event_type: str
    severity: Severity
    content: str  # str.format with value= and threshold=
    above: bool = True

    def holds(self, value: float) -> bool:
        return value > self.threshold if self.above else value < self.threshold

    def describe(self, value: float) -> str:
        return self.content.format(value=value, threshold=self.threshold)

def default_rules(cfg: Settings = default_settings) -> list[AlertRule]:
    return [
        AlertRule("vibration", SensorType.vibration, cfg.vibration_threshold,
                  "Hit", Severity.warning, "Strong impact detected on panel."),
        AlertRule("tilt", SensorType.tilt, cfg.tilt_threshold,
                  "Tilt", Severity.warning, "Box tilted beyond {threshold:g}°."),
        AlertRule("temperature", SensorType.temperature, cfg.temperature_threshold,
                  "Temperature", Severity.warning, "Temperature rose to {value:.1f}°C."),
        AlertRule("battery", SensorType.battery, cfg.battery_low_threshold,
                  "Battery", Severity.warning, "Battery level low: {value:.0f}%.", above=False),
    ]

STATUS_EVENTS = {
    SafeStatus.open: ("Open with alarm", Severity.critical, "Lid opened while armed. Siren triggered."),
    SafeStatus.unlocked: ("Unlock", Severity.info, "System disarmed(unlock) by user."),
    SafeStatus.locked: ("Lock", Severity.info, "System armed."),
}

class EventDeriver:
    def __init__(
        self,
        state: DeviceStateStore,
        rules: Iterable[AlertRule] | None = None,
        cooldown_seconds: float | None = None,
        clock: Clock = utcnow,
    ):
        self.state = state
        self.rules = {r.sensor_type: r for r in (rules if rules is not None else default_rules())}
        if cooldown_seconds is None:
            cooldown_seconds = default_settings.alert_cooldown_seconds
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock

    def observe(self, rec: NormalizedRecord) -> Optional[EventLogEntry]:
        with self.state.locked(rec.device_id) as st:
            if rec.kind is RecordKind.sensor:
                rule = self.rules.get(rec.record.sensor_type)
                if rule is None:
                    return None
                return self._observe_alert(st, rule, rec.record)
            if rec.kind is RecordKind.status:
                return self._observe_status(st, rec.record)
            return None

    def alert_state(self, device_id: str, kind: str) -> AlertState:
        with self.state.locked(device_id) as st:
            return st.alert(kind)

    # ---------------- threshold alerts ----------------
    def _cooled(self, alert: AlertState, now: datetime) -> bool:
        return (
            alert.cleared_since is not None
            and now - alert.cleared_since >= self.cooldown
            and now - alert.last_triggered_at > self.cooldown
        )

    def _observe_alert(self, st: DeviceState, rule: AlertRule, sample: SensorSample) -> Optional[EventLogEntry]:
        now = self.clock()
        alert = st.alert(rule.kind)

        if alert.triggered and self._cooled(alert, now):
            alert.triggered = False
            alert.cleared_since = None
            log.debug("%s %s back to normal", st.device_id, rule.kind)

        if rule.holds(sample.value):
            alert.cleared_since = None
            if alert.triggered:
                return None
            alert.triggered = True
            alert.last_triggered_at = now
            return self._event(sample, rule.event_type, rule.severity, rule.describe(sample.value), now)

        if alert.triggered and alert.cleared_since is None:
            alert.cleared_since = now
        return None

    # ---------------- status transitions ----------------
    def _observe_status(self, st: DeviceState, rec: StatusRecord) -> Optional[EventLogEntry]:
        prev = st.last_status
        if prev is not None and rec.timestamp < prev.observed_at:
            log.info("%s: ignoring stale status %s from %s", st.device_id, rec.status.value, rec.timestamp)
            return None

        st.last_status = LastStatus(status=rec.status, observed_at=rec.timestamp)
        if prev is not None and prev.status == rec.status:
            return None

        event_type, severity, content = STATUS_EVENTS[rec.status]
        return self._event(rec, event_type, severity, content, self.clock())

    def _event(self, cause, event_type: str, severity: Severity, content: str, now: datetime) -> EventLogEntry:
        ev = EventLogEntry(
            device_id=cause.device_id,
            type=event_type,
            content=content,
            severity=severity,
            timestamp=max(now, cause.timestamp),
        )
        log.info("event %s [%s] for %s: %s", ev.type, ev.severity.value, ev.device_id, ev.content)
        return ev
