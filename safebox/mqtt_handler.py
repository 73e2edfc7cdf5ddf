# safebox/mqtt_handler.py
import json, time, logging, uuid
import paho.mqtt.client as mqtt

from .errors import IngestValidationError, PersistenceError
from .schemas import RecordKind
from .service import TelemetryService
from .settings import settings
from .store import SqlStore

log = logging.getLogger("mqtt")

# topic suffix -> record kind; the long forms match the REST paths
TOPIC_KINDS = {
    "sensor": RecordKind.sensor,
    "sensor-data": RecordKind.sensor,
    "telemetry": RecordKind.sensor,
    "status": RecordKind.status,
    "safe-status": RecordKind.status,
    "rotation": RecordKind.rotation,
    "rotation-data": RecordKind.rotation,
}

_DEVICE_KEYS = ("device_id", "deviceId", "safeId")

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def command_topic(device_id: str) -> str:
    return f"{settings.mqtt_topic_base}/{device_id}/command"

def make_message_handler(service: TelemetryService):
    stats = {"rx_total": 0, "rx_ok": 0, "rx_dropped": 0, "events": 0}

    def on_message(client, userdata, msg):
        stats["rx_total"] += 1
        parts = msg.topic.split("/")
        if len(parts) < 3:
            return
        dev_id, suffix = parts[-2], parts[-1]

        if suffix == "command":
            log.debug("command passthrough on %s", msg.topic)
            return
        kind = TOPIC_KINDS.get(suffix)
        if kind is None:
            return

        try:
            payload = json.loads(msg.payload.decode("utf-8")) if msg.payload else {}
            if isinstance(payload, dict) and not any(k in payload for k in _DEVICE_KEYS):
                payload["deviceId"] = dev_id
            result = service.handle(kind, payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            stats["rx_dropped"] += 1
            log.warning("dropping unreadable payload on %s: %s", msg.topic, e)
            return
        except IngestValidationError as e:
            stats["rx_dropped"] += 1
            log.warning("dropping invalid %s message on %s: %s (%s)", kind.value, msg.topic, e.message, e.kind)
            return
        except PersistenceError as e:
            stats["rx_dropped"] += 1
            log.error("dropping %s message on %s, store failed: %s", kind.value, msg.topic, e)
            return
        except Exception:
            stats["rx_dropped"] += 1
            log.exception("on_message error on %s", msg.topic)
            return

        stats["rx_ok"] += 1
        if result.event is not None:
            stats["events"] += 1
        # Occasionally log counters so you know it's alive
        if stats["rx_total"] % 100 == 1:
            log.info("msg counts: total=%d ok=%d dropped=%d events=%d",
                     stats["rx_total"], stats["rx_ok"], stats["rx_dropped"], stats["events"])

    on_message.stats = stats
    return on_message

def start_mqtt(service: TelemetryService) -> mqtt.Client:
    client = mqtt.Client(
        client_id=f"safebox-api-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)  # paho internal logs

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.error("Connect failed rc=%s (5=Not authorized). Retrying...", rc)
            return
        topic = f"{settings.mqtt_topic_base}/+/+"
        res, mid = client.subscribe(topic, qos=0)
        log.info("Connected. SUB %s res=%s mid=%s", topic, res, mid)

    def on_subscribe(client, userdata, mid, granted_qos, properties):
        log.info("SUBACK mid=%s granted_qos=%s", mid, granted_qos)
        if any(_rc_int(q) >= 0x80 for q in granted_qos):
            log.warning("subscription rejected by broker ACL")

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.warning("Disconnected rc=%s. Reconnecting...", _rc_int(reason_code))

    client.on_connect = on_connect
    client.on_subscribe = on_subscribe
    client.on_disconnect = on_disconnect
    client.on_message = make_message_handler(service)

    log.info(
        "Bootstrapping host=%s port=%s user=%s base=%s",
        settings.mqtt_host, settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>", settings.mqtt_topic_base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client

def publish_command(client: mqtt.Client, store: SqlStore, device_id: str, command: str, params: dict) -> str:
    """Queue a command row, publish it, and mark it sent or failed.

    Returns the command id; raises RuntimeError when the publish fails.
    """
    command_id = f"cmd_{uuid.uuid4().hex[:10]}"
    store.record_command(command_id, device_id, command, params)

    payload = json.dumps({"command_id": command_id, "command": command, "params": params})
    try:
        info = client.publish(command_topic(device_id), payload, qos=0, retain=False)
        # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise RuntimeError(f"publish rc={info.rc}")
        info.wait_for_publish(timeout=settings.persistence_timeout_seconds)
    except (RuntimeError, ValueError) as e:
        store.set_command_status(command_id, "failed")
        raise RuntimeError(f"MQTT publish failed: {e}") from e

    store.set_command_status(command_id, "sent")
    return command_id
