import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from safebox.events import AlertRule, EventDeriver, default_rules
from safebox.ingest import Normalizer
from safebox.schemas import SensorType, Severity
from safebox.settings import Settings
from safebox.state import AlertPhase, DeviceStateStore

from tests.conftest import BASE


@pytest.fixture()
def normalizer(state, clock):
    return Normalizer(state, clock=clock)


@pytest.fixture()
def deriver(state, clock):
    cfg = Settings(vibration_threshold=3000, tilt_threshold=30)
    return EventDeriver(state, default_rules(cfg), cooldown_seconds=5, clock=clock)


def vib(normalizer, deriver, value, device="safe-001"):
    rec = normalizer.ingest("sensor", {"safeId": device, "sensorType": "vibration", "value": value})
    return deriver.observe(rec)


def status(normalizer, deriver, word, device="safe-001", **extra):
    rec = normalizer.ingest("status", {"safeId": device, "status": word, **extra})
    return deriver.observe(rec)


def test_safe_001_impact_scenario(normalizer, deriver, clock):
    ev = vib(normalizer, deriver, 3500)
    assert ev is not None
    assert ev.type == "Hit"
    assert ev.severity is Severity.warning
    assert ev.device_id == "safe-001"

    assert vib(normalizer, deriver, 3600) is None
    assert deriver.alert_state("safe-001", "vibration").phase is AlertPhase.triggered

    assert vib(normalizer, deriver, 100) is None
    assert deriver.alert_state("safe-001", "vibration").phase is AlertPhase.clearing

    clock.advance(6)
    assert vib(normalizer, deriver, 100) is None
    assert deriver.alert_state("safe-001", "vibration").phase is AlertPhase.normal


def test_continuous_excursion_emits_once(normalizer, deriver, clock):
    events = []
    for i in range(50):
        events.append(vib(normalizer, deriver, 3001 + i * 10))
        clock.advance(0.5)
    assert len([e for e in events if e is not None]) == 1


def test_flapping_inside_cooldown_is_one_excursion(normalizer, deriver, clock):
    assert vib(normalizer, deriver, 3500) is not None
    for value in (100, 3500, 100, 3500, 100, 3500):
        clock.advance(1)
        assert vib(normalizer, deriver, value) is None


def test_new_crossing_after_clear_and_cooldown(normalizer, deriver, clock):
    assert vib(normalizer, deriver, 3500) is not None
    clock.advance(1)
    assert vib(normalizer, deriver, 100) is None
    clock.advance(6)
    ev = vib(normalizer, deriver, 3500)
    assert ev is not None and ev.type == "Hit"
    assert vib(normalizer, deriver, 3500) is None


def test_recovery_is_silent(normalizer, deriver, clock):
    # a "cleared" event is deliberately not emitted
    vib(normalizer, deriver, 3500)
    emitted = []
    for _ in range(10):
        clock.advance(2)
        emitted.append(vib(normalizer, deriver, 0))
    assert emitted == [None] * 10
    assert deriver.alert_state("safe-001", "vibration").phase is AlertPhase.normal


def test_devices_and_alert_kinds_are_independent(normalizer, deriver):
    assert vib(normalizer, deriver, 3500, device="a") is not None
    assert vib(normalizer, deriver, 3500, device="b") is not None
    rec = normalizer.ingest("sensor", {"safeId": "a", "sensorType": "tilt", "value": 45})
    ev = deriver.observe(rec)
    assert ev.type == "Tilt"
    assert ev.content == "Box tilted beyond 30°."


def test_battery_rule_fires_below_threshold(normalizer, deriver):
    rec = normalizer.ingest("sensor", {"safeId": "a", "sensorType": "battery", "value": 12})
    ev = deriver.observe(rec)
    assert ev.type == "Battery"
    assert ev.content == "Battery level low: 12%."
    rec = normalizer.ingest("sensor", {"safeId": "a", "sensorType": "battery", "value": 80})
    assert deriver.observe(rec) is None


def test_sensor_without_rule_and_rotation_never_emit(normalizer, deriver):
    rec = normalizer.ingest("sensor", {"safeId": "a", "sensorType": "buzzer", "value": 1})
    assert deriver.observe(rec) is None
    rec = normalizer.ingest("rotation", {"safeId": "a", "alpha": 180.0, "beta": 90.0, "gamma": 45.0})
    assert deriver.observe(rec) is None


def test_custom_rule_table(state, normalizer, clock):
    rules = [AlertRule("shock", SensorType.accelerometer, 2.0, "Shock", Severity.critical, "Shock of {value:.1f} g.")]
    deriver = EventDeriver(state, rules, cooldown_seconds=1, clock=clock)
    rec = normalizer.ingest("sensor", {"safeId": "a", "sensorType": "accelerometer", "value": 3.3})
    ev = deriver.observe(rec)
    assert (ev.type, ev.severity, ev.content) == ("Shock", Severity.critical, "Shock of 3.3 g.")


def test_event_never_precedes_its_cause(normalizer, deriver):
    future = (BASE + timedelta(minutes=3)).isoformat()
    rec = normalizer.ingest("sensor", {"safeId": "a", "sensorType": "vibration", "value": 5000, "timestamp": future})
    ev = deriver.observe(rec)
    assert ev.timestamp >= rec.timestamp


# ---------------- status ----------------
def test_status_event_iff_status_changes(normalizer, deriver, clock):
    sequence = ["lock", "lock", "unlock", "unlock", "open", "lock", "lock", "open", "open", "unlock"]
    previous = None
    for word in sequence:
        clock.advance(1)
        ev = status(normalizer, deriver, word)
        changed = word != previous
        assert (ev is not None) == changed, word
        previous = word


@pytest.mark.parametrize("word, etype, severity", [
    ("open", "Open with alarm", Severity.critical),
    ("unlock", "Unlock", Severity.info),
    ("lock", "Lock", Severity.info),
])
def test_first_status_emits_mapped_event(normalizer, deriver, word, etype, severity):
    ev = status(normalizer, deriver, word, device="fresh")
    assert (ev.type, ev.severity) == (etype, severity)


def test_stale_status_is_ignored(normalizer, deriver, state):
    assert status(normalizer, deriver, "lock", timestamp="2026-10-18T12:00:00Z") is not None
    assert status(normalizer, deriver, "open", timestamp="2026-10-18T11:00:00Z") is None
    assert state.last_status("safe-001").status.value == "locked"


# ---------------- concurrency ----------------
def test_concurrent_samples_for_one_device_emit_once():
    state = DeviceStateStore()
    normalizer = Normalizer(state)
    deriver = EventDeriver(state, default_rules(Settings(vibration_threshold=3000)), cooldown_seconds=60)
    barrier = threading.Barrier(16)

    def hit(_):
        rec = normalizer.ingest("sensor", {"safeId": "safe-001", "sensorType": "vibration", "value": 3500})
        barrier.wait()
        return deriver.observe(rec)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(hit, range(16)))
    assert len([r for r in results if r is not None]) == 1


def test_concurrent_status_flips_emit_one_event_per_change():
    state = DeviceStateStore()
    normalizer = Normalizer(state)
    deriver = EventDeriver(state, cooldown_seconds=5)

    def flip(word):
        rec = normalizer.ingest("status", {"safeId": "safe-001", "status": word, "timestamp": "2026-10-18T12:00:00Z"})
        return deriver.observe(rec)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(flip, ["lock"] * 40))
    assert len([r for r in results if r is not None]) == 1
