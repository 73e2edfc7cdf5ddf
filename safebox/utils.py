from datetime import datetime, timezone

from dateutil import parser as dtparser
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .settings import settings

def add_cors(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

def utcnow() -> datetime:
    # naive UTC everywhere; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)

def parse_ts(ts) -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) as naive UTC.

    Raises ValueError when the value cannot be read as a timestamp.
    """
    if isinstance(ts, datetime):
        return to_naive_utc(ts)
    if not isinstance(ts, str) or not ts.strip():
        raise ValueError(f"not a timestamp: {ts!r}")
    return to_naive_utc(dtparser.isoparse(ts.strip()))

def isoformat_z(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat(timespec="milliseconds") + "Z"
