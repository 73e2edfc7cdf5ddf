from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field, Column, DateTime, JSON

from .utils import utcnow

# timestamps are naive UTC throughout
NAIVE_TS = DateTime(timezone=False)

class SensorLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    sensor_type: str = Field(index=True)
    value: float
    unit: Optional[str] = None
    ts: datetime = Field(sa_type=NAIVE_TS, index=True)

class StatusLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    status: str
    ts: datetime = Field(sa_type=NAIVE_TS, index=True)

class RotationLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    alpha: float
    beta: float
    gamma: float
    ts: datetime = Field(sa_type=NAIVE_TS, index=True)

class EventLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    type: str = Field(index=True)
    content: str
    severity: str = Field(default="info")
    ts: datetime = Field(sa_type=NAIVE_TS, index=True)

class Command(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    command_id: str = Field(index=True)
    device_id: str = Field(index=True)
    command: str
    params: dict = Field(default_factory=dict, sa_column=Column(JSON))
    queued_at: datetime = Field(default_factory=utcnow, sa_type=NAIVE_TS)
    status: str = Field(default="queued")  # queued|sent|failed
