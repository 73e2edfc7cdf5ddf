from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator

class RecordKind(str, Enum):
    sensor = "sensor"
    status = "status"
    rotation = "rotation"
    event = "event"

    @classmethod
    def parse(cls, name: str) -> "RecordKind":
        """Accept both the short kind names and the dashboard's measurement names."""
        key = (name or "").strip().lower()
        return cls(_MEASUREMENT_NAMES.get(key, key))

_MEASUREMENT_NAMES = {
    "sensor_data": "sensor",
    "safe_status": "status",
    "rotation_data": "rotation",
    "event_log": "event",
    "event_logs": "event",
}

class SensorType(str, Enum):
    tilt = "tilt"
    vibration = "vibration"
    temperature = "temperature"
    battery = "battery"
    magnetic_hall = "magnetic_hall"
    buzzer = "buzzer"
    accelerometer = "accelerometer"

SENSOR_ALIASES = {"magnetic": "magnetic_hall", "door": "magnetic_hall"}

DEFAULT_UNITS = {
    SensorType.tilt: "degrees",
    SensorType.vibration: "level",
    SensorType.temperature: "celsius",
    SensorType.battery: "percent",
}

class SafeStatus(str, Enum):
    locked = "locked"
    unlocked = "unlocked"
    open = "open"

STATUS_ALIASES = {"lock": "locked", "unlock": "unlocked", "opened": "open"}

class Severity(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"
    critical = "critical"

_DEVICE_ID = AliasChoices("device_id", "deviceId", "safeId")

def _number(v: Any) -> Any:
    # no numeric strings, no bools
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError("must be a number")
    return v

Number = Annotated[float, BeforeValidator(_number), Field(allow_inf_nan=False)]

# ---------------- immutable records ----------------
class SensorSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1, validation_alias=_DEVICE_ID)
    sensor_type: SensorType = Field(validation_alias=AliasChoices("sensor_type", "sensorType"))
    value: Number
    unit: str | None = Field(default=None, validate_default=True)
    timestamp: datetime

    @field_validator("sensor_type", mode="before")
    @classmethod
    def sensor_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return SENSOR_ALIASES.get(v, v)
        return v

    @field_validator("unit")
    @classmethod
    def default_unit(cls, v: str | None, info) -> str | None:
        if v is None:
            return DEFAULT_UNITS.get(info.data.get("sensor_type"))
        return v

class StatusRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1, validation_alias=_DEVICE_ID)
    status: SafeStatus
    timestamp: datetime

    @field_validator("status", mode="before")
    @classmethod
    def status_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return STATUS_ALIASES.get(v, v)
        return v

class RotationSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(min_length=1, validation_alias=_DEVICE_ID)
    alpha: Number
    beta: Number
    gamma: Number
    timestamp: datetime

class EventLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    type: str
    content: str
    severity: Severity
    timestamp: datetime

# ---------------- API shapes ----------------
class HealthOut(BaseModel):
    status: str
    lastHeartbeat: str | None
    safeStatus: str | None = None

class LogOut(BaseModel):
    type: str
    content: str
    severity: Severity
    timestamp: datetime

class ExplorerPage(BaseModel):
    success: bool
    data: list[dict[str, Any]]
    total: int
    error: str | None = None

class CommandRequest(BaseModel):
    device_id: str = Field(validation_alias=_DEVICE_ID)
    command: str
    params: dict[str, Any] = {}

class CommandResponse(BaseModel):
    status: str
    commandId: str
