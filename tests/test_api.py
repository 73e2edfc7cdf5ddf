from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from safebox.errors import PersistenceTimeout
from safebox.main import create_app


@pytest.fixture()
def app(engine):
    return create_app(engine, mqtt_enabled=False)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


def post_vibration(client, value):
    return client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "vibration", "value": value})


def test_impact_logged_once(client):
    first = post_vibration(client, 3500)
    assert first.status_code == 200
    assert first.json()["event"]["type"] == "Hit"
    second = post_vibration(client, 3600)
    assert second.status_code == 200
    assert "event" not in second.json()

    logs = client.get("/api/logs", params={"safeId": "safe-001"}).json()
    assert [(l["type"], l["severity"]) for l in logs] == [("Hit", "warning")]


def test_sensor_data_listing(client):
    now = datetime.now(timezone.utc)
    for value, age in ((10, 60), (20, 30)):
        ts = (now - timedelta(seconds=age)).isoformat()
        client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "vibration", "value": value, "timestamp": ts})
    body = client.get("/api/sensor-data", params={"safeId": "safe-001"}).json()
    assert body["success"]
    assert [r["value"] for r in body["data"]] == [20.0, 10.0]
    assert body["data"][0]["timestamp"].endswith("Z")


def test_validation_error_is_400(client):
    resp = client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "laser", "value": 1})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["kind"] == "invalid-enum"


def test_out_of_range_epoch_is_400(client):
    resp = client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "tilt", "value": 1.0, "timestamp": 1e30})
    assert resp.status_code == 400
    assert resp.json()["field"] == "timestamp"


def test_status_transitions(client):
    r1 = client.post("/api/safe-status", json={"safeId": "safe-001", "status": "lock"})
    r2 = client.post("/api/safe-status", json={"safeId": "safe-001", "status": "lock"})
    r3 = client.post("/api/safe-status", json={"safeId": "safe-001", "status": "open"})
    assert r1.json()["event"]["type"] == "Lock"
    assert "event" not in r2.json()
    assert r3.json()["event"]["severity"] == "critical"

    current = client.get("/api/safe-status", params={"safeId": "safe-001"}).json()
    assert current["data"]["status"] == "open"


def test_rotation_latest(client):
    assert client.get("/api/rotation-data/latest").json()["data"] is None
    client.post("/api/rotation-data", json={"safeId": "safe-001", "alpha": 1.5, "beta": 2.5, "gamma": 3.5})
    data = client.get("/api/rotation-data/latest", params={"safeId": "safe-001"}).json()["data"]
    assert (data["alpha"], data["beta"], data["gamma"]) == (1.5, 2.5, 3.5)


def test_health_after_ingest(client):
    assert client.get("/api/health", params={"safeId": "safe-001"}).json()["status"] == "WARN"
    client.post("/api/safe-status", json={"safeId": "safe-001", "status": "lock"})
    body = client.get("/api/health", params={"safeId": "safe-001"}).json()
    assert body["status"] == "OK"
    assert body["safeStatus"] == "locked"


def test_charts(client):
    client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "tilt", "value": 1.0,
                                          "timestamp": "2025-01-01T12:00:00.100Z"})
    client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "tilt", "value": 3.0,
                                          "timestamp": "2025-01-01T12:00:00.900Z"})
    resp = client.get("/api/charts", params={"safeId": "safe-001", "hours": 24 * 365 * 5})
    assert resp.status_code == 200
    assert resp.json() == [{"t": "2025-01-01T12:00:00.000Z", "tilt": 2.0, "vib": None}]


def test_charts_vibration_key(client):
    client.post("/api/sensor-data", json={"safeId": "safe-001", "sensorType": "vibration", "value": 40,
                                          "timestamp": "2025-01-01T12:00:00Z"})
    resp = client.get("/api/charts", params={"safeId": "safe-001", "hours": 24 * 365 * 5})
    assert resp.json() == [{"t": "2025-01-01T12:00:00.000Z", "tilt": None, "vib": 40.0}]


def test_charts_bad_granularity(client):
    assert client.get("/api/charts", params={"granularity": "week"}).status_code == 400


def test_explorer(client):
    for v in range(7):
        post_vibration(client, float(v))
    body = client.get("/api/explorer", params={
        "measurement": "sensor_data", "sortField": "value", "sortDirection": "asc",
        "limit": 3, "offset": 3, "sensorType": "vibration", "eventType": "all",
    }).json()
    assert body["success"]
    assert body["total"] == 7
    assert [r["value"] for r in body["data"]] == [3.0, 4.0, 5.0]


def test_explorer_errors_are_structured(client):
    body = client.get("/api/explorer", params={"measurement": "sensor_data", "sortField": "colour"}).json()
    assert body == {"success": False, "data": [], "total": 0, "error": body["error"]}
    body = client.get("/api/explorer", params={"measurement": "weather"}).json()
    assert body["success"] is False and body["total"] == 0


def test_store_timeout_is_504_and_state_is_kept(app, client):
    app.state.service.store = MagicMock()
    app.state.service.store.append_status.side_effect = PersistenceTimeout("append timed out after 5s")

    resp = client.post("/api/safe-status", json={"safeId": "safe-009", "status": "open"})
    assert resp.status_code == 504
    assert app.state.service.state.last_status("safe-009").status.value == "open"


def test_command_without_mqtt(client):
    resp = client.post("/api/commands", json={"deviceId": "safe-001", "command": "siren_off"})
    assert resp.status_code == 503
