"""
In-memory per-device state: alert transition state, last known lock status
and heartbeat. Nothing here is durable; a restart starts every device from
scratch.

Each device gets its own re-entrant lock. Hold it (``with store.locked(id)``)
across read-decide-write so samples for the same device arriving from REST
and MQTT at the same time are applied one after the other. Different devices
never contend.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, Optional

from .schemas import SafeStatus

class AlertPhase(str, Enum):
    normal = "normal"
    triggered = "triggered"
    clearing = "clearing"  # triggered, condition gone, cooldown running

@dataclass
class AlertState:
    triggered: bool = False
    last_triggered_at: Optional[datetime] = None
    cleared_since: Optional[datetime] = None

    @property
    def phase(self) -> AlertPhase:
        if not self.triggered:
            return AlertPhase.normal
        return AlertPhase.clearing if self.cleared_since is not None else AlertPhase.triggered

@dataclass
class LastStatus:
    status: SafeStatus
    observed_at: datetime

@dataclass
class DeviceState:
    device_id: str
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    alerts: Dict[str, AlertState] = field(default_factory=dict)
    last_status: Optional[LastStatus] = None
    last_message_at: Optional[datetime] = None

    def alert(self, kind: str) -> AlertState:
        return self.alerts.setdefault(kind, AlertState())

class DeviceStateStore:
    def __init__(self) -> None:
        self._devices: Dict[str, DeviceState] = {}
        self._registry_lock = threading.Lock()

    def get(self, device_id: str) -> DeviceState:
        st = self._devices.get(device_id)
        if st is None:
            with self._registry_lock:
                st = self._devices.setdefault(device_id, DeviceState(device_id))
        return st

    @contextmanager
    def locked(self, device_id: str) -> Iterator[DeviceState]:
        st = self.get(device_id)
        with st.lock:
            yield st

    def touch(self, device_id: str, at: datetime) -> None:
        with self.locked(device_id) as st:
            if st.last_message_at is None or at > st.last_message_at:
                st.last_message_at = at

    def last_heartbeat(self, device_id: str | None = None) -> Optional[datetime]:
        """Heartbeat of one device, or the freshest across all devices."""
        if device_id is not None:
            st = self._devices.get(device_id)
            return st.last_message_at if st else None
        with self._registry_lock:
            beats = [s.last_message_at for s in self._devices.values() if s.last_message_at]
        return max(beats) if beats else None

    def last_status(self, device_id: str | None = None) -> Optional[LastStatus]:
        if device_id is not None:
            st = self._devices.get(device_id)
            return st.last_status if st else None
        with self._registry_lock:
            known = [s.last_status for s in self._devices.values() if s.last_status]
        return max(known, key=lambda s: s.observed_at) if known else None

    def device_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._devices)
