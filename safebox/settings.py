from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "postgresql://safebox:safebox_pw@db:5432/safebox")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_enabled: bool = os.getenv("MQTT_ENABLED", "1") == "1"
    mqtt_host: str = os.getenv("MQTT_HOST", "mqtt")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "safebox")

    # alert thresholds
    vibration_threshold: float = float(os.getenv("VIBRATION_THRESHOLD", "3000"))
    tilt_threshold: float = float(os.getenv("TILT_THRESHOLD", "30"))
    temperature_threshold: float = float(os.getenv("TEMPERATURE_THRESHOLD", "35"))
    battery_low_threshold: float = float(os.getenv("BATTERY_LOW_THRESHOLD", "20"))
    alert_cooldown_seconds: float = float(os.getenv("ALERT_COOLDOWN_SECONDS", "5"))

    # heartbeat age bands; use 900/1800 with HEARTBEAT_SOURCE=storage
    health_ok_seconds: float = float(os.getenv("HEALTH_OK_SECONDS", "5"))
    health_warn_seconds: float = float(os.getenv("HEALTH_WARN_SECONDS", "30"))
    heartbeat_source: str = os.getenv("HEARTBEAT_SOURCE", "memory")  # memory|storage

    persistence_timeout_seconds: float = float(os.getenv("PERSISTENCE_TIMEOUT_SECONDS", "5"))
    explorer_default_days: int = int(os.getenv("EXPLORER_DEFAULT_DAYS", "30"))
    chart_default_hours: int = int(os.getenv("CHART_DEFAULT_HOURS", "24"))
    chart_granularity: str = os.getenv("CHART_GRANULARITY", "second")  # hour|minute|second

settings = Settings()
