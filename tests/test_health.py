from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from safebox.errors import PersistenceError
from safebox.health import HealthMonitor, classify
from safebox.schemas import SafeStatus, SensorSample, StatusRecord
from safebox.state import LastStatus

from tests.conftest import BASE


@pytest.mark.parametrize("age, expected", [
    (None, "WARN"),
    (0, "OK"),
    (5, "OK"),
    (5.1, "WARN"),
    (30, "WARN"),
    (40, "ERROR"),
])
def test_classify(age, expected):
    assert classify(age, 5, 30) == expected


def test_forty_seconds_of_silence_is_error(state, clock):
    state.touch("safe-001", clock.now - timedelta(seconds=40))
    report = HealthMonitor(state, ok_seconds=5, warn_seconds=30, clock=clock).report("safe-001")
    assert report.status == "ERROR"
    assert report.last_heartbeat == clock.now - timedelta(seconds=40)


def test_fresh_heartbeat_is_ok_and_carries_status(state, clock):
    state.touch("safe-001", clock.now - timedelta(seconds=2))
    state.get("safe-001").last_status = LastStatus(SafeStatus.locked, clock.now)
    out = HealthMonitor(state, ok_seconds=5, warn_seconds=30, clock=clock).report("safe-001").to_out()
    assert out.status == "OK"
    assert out.safeStatus == "locked"
    assert out.lastHeartbeat == "2026-10-18T11:59:58.000Z"


def test_no_data_is_warn(state, clock):
    report = HealthMonitor(state, clock=clock).report("never-seen")
    assert report.status == "WARN"
    assert report.last_heartbeat is None


def test_all_devices_uses_freshest_heartbeat(state, clock):
    state.touch("a", clock.now - timedelta(seconds=100))
    state.touch("b", clock.now - timedelta(seconds=1))
    assert HealthMonitor(state, ok_seconds=5, warn_seconds=30, clock=clock).report().status == "OK"


def test_storage_source_with_minute_thresholds(state, store, clock):
    store.append_sample(SensorSample(device_id="safe-001", sensor_type="tilt", value=3.0,
                                     timestamp=clock.now - timedelta(minutes=20)))
    monitor = HealthMonitor(state, store, ok_seconds=15 * 60, warn_seconds=30 * 60, source="storage", clock=clock)
    report = monitor.report("safe-001")
    assert report.status == "WARN"
    assert report.last_heartbeat == BASE - timedelta(minutes=20)


def test_safe_status_falls_back_to_store(state, store, clock):
    store.append_status(StatusRecord(device_id="safe-001", status="open", timestamp=clock.now))
    assert HealthMonitor(state, store, clock=clock).report("safe-001").safe_status == "open"


def test_unreachable_store_never_raises(state, clock):
    broken = MagicMock()
    broken.latest.side_effect = PersistenceError("connection refused")
    report = HealthMonitor(state, broken, source="storage", clock=clock).report("safe-001")
    assert report.status == "WARN"
