import asyncio
import logging
from typing import Any, List

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from .db import init_db
from .errors import IngestValidationError, PersistenceError, PersistenceTimeout
from .health import HealthMonitor
from .queries import COLUMNS, FILTERS, ChartWindow, ExplorerQuery, chart_series, explore, recent_events
from .schemas import CommandRequest, CommandResponse, ExplorerPage, HealthOut, LogOut, RecordKind
from .mqtt_handler import publish_command, start_mqtt
from .service import TelemetryService, record_row
from .settings import settings
from .state import DeviceStateStore
from .store import SqlStore
from .utils import add_cors, isoformat_z, parse_ts, utcnow
from .ws_manager import LiveFeed

logging.basicConfig(level=settings.log_level)
log = logging.getLogger("api")

router = APIRouter(prefix="/api")

# explorer query-string names -> filter names understood by the query engine
EXPLORER_PARAMS = {
    "safeId": "deviceId",
    "deviceId": "deviceId",
    "sensorType": "sensorType",
    "unit": "unit",
    "status": "status",
    "eventType": "eventType",
    "severity": "severity",
}

# chart keys the dashboard plots by
CHART_KEYS = {"vibration": "vib"}

def _row(row: dict[str, Any]) -> dict[str, Any]:
    return {**row, "timestamp": isoformat_z(row["timestamp"])}

def _ingest(request: Request, kind: RecordKind, payload: dict[str, Any]):
    result = request.app.state.service.handle(kind, payload)
    out = {"success": True, "data": record_row(kind, result.record.record)}
    if result.event is not None:
        out["event"] = record_row(RecordKind.event, result.event)
    return out

def _recent(request: Request, kind: RecordKind, device_id: str | None, limit: int):
    filters = {"deviceId": device_id} if device_id else {}
    res = explore(request.app.state.store, ExplorerQuery(kind=kind, filters=filters, limit=limit))
    if not res.success:
        raise HTTPException(status_code=500, detail=res.error)
    return {"success": True, "data": [_row(r) for r in res.data]}

# ---------------- ingestion ----------------
@router.post("/sensor-data")
def post_sensor_data(request: Request, payload: dict[str, Any] = Body(...)):
    return _ingest(request, RecordKind.sensor, payload)

@router.get("/sensor-data")
def get_sensor_data(request: Request, safeId: str | None = None, limit: int = Query(50, ge=1, le=1000)):
    return _recent(request, RecordKind.sensor, safeId, limit)

@router.post("/safe-status")
def post_safe_status(request: Request, payload: dict[str, Any] = Body(...)):
    return _ingest(request, RecordKind.status, payload)

@router.get("/safe-status")
def get_safe_status(request: Request, safeId: str | None = None):
    latest = request.app.state.store.latest(RecordKind.status, safeId)
    return {"success": True, "data": record_row(RecordKind.status, latest) if latest else None}

@router.post("/rotation-data")
def post_rotation_data(request: Request, payload: dict[str, Any] = Body(...)):
    return _ingest(request, RecordKind.rotation, payload)

@router.get("/rotation-data")
def get_rotation_data(request: Request, safeId: str | None = None, limit: int = Query(50, ge=1, le=1000)):
    return _recent(request, RecordKind.rotation, safeId, limit)

@router.get("/rotation-data/latest")
def latest_rotation(request: Request, safeId: str = "safe-001"):
    latest = request.app.state.store.latest(RecordKind.rotation, safeId)
    return {"success": True, "data": record_row(RecordKind.rotation, latest) if latest else None}

# ---------------- dashboard views ----------------
@router.get("/health", response_model=HealthOut)
def health(request: Request, safeId: str | None = None):
    return request.app.state.health.report(safeId).to_out()

@router.get("/charts")
def charts(
    request: Request,
    safeId: str = "safe-001",
    hours: float = Query(settings.chart_default_hours, gt=0),
    granularity: str = settings.chart_granularity,
    fields: str = "tilt,vibration",
):
    plotted = {v: k for k, v in CHART_KEYS.items()}
    names = tuple(plotted.get(f.strip(), f.strip()) for f in fields.split(",") if f.strip())
    try:
        window = ChartWindow.last_hours(hours, granularity=granularity, fields=names)
        series = chart_series(request.app.state.store, safeId, window)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [b.to_dict(CHART_KEYS) for b in series]

@router.get("/logs", response_model=List[LogOut])
def logs(request: Request, safeId: str = "safe-001", limit: int = Query(50, ge=1, le=1000)):
    events = recent_events(request.app.state.store, safeId, limit)
    return [LogOut(type=e.type, content=e.content, severity=e.severity, timestamp=e.timestamp) for e in events]

@router.get("/explorer", response_model=ExplorerPage)
def explorer(
    request: Request,
    measurement: str = "sensor_data",
    limit: int = 50,
    offset: int = 0,
    sortField: str = "timestamp",
    sortDirection: str = "desc",
    startTime: str | None = None,
    endTime: str | None = None,
    search: str | None = None,
):
    try:
        kind = RecordKind.parse(measurement)
        start = parse_ts(startTime) if startTime else None
        end = parse_ts(endTime) if endTime else None
    except ValueError as e:
        return ExplorerPage(success=False, data=[], total=0, error=str(e))

    # the dashboard sends every filter it has; keep the ones this kind understands
    filters = {}
    for param, name in EXPLORER_PARAMS.items():
        value = request.query_params.get(param)
        if value and value != "all" and name in FILTERS[kind]:
            filters[name] = value

    res = explore(request.app.state.store, ExplorerQuery(
        kind=kind, start=start, end=end, filters=filters, sort_field=sortField,
        sort_dir=sortDirection.lower(), limit=limit, offset=offset, search=search or None,
    ))
    return ExplorerPage(success=res.success, data=[_row(r) for r in res.data], total=res.total, error=res.error)

@router.get("/explorer/columns")
def explorer_columns():
    return {k.value: list(cols) for k, cols in COLUMNS.items()}

# ---------------- commands ----------------
@router.post("/commands", response_model=CommandResponse)
def post_command(request: Request, cmd: CommandRequest):
    client = request.app.state.mqtt_client
    if client is None:
        raise HTTPException(status_code=503, detail="MQTT not initialized")
    try:
        command_id = publish_command(client, request.app.state.store, cmd.device_id, cmd.command, cmd.params)
    except RuntimeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return CommandResponse(status="sent", commandId=command_id)

# ---------------- error mapping ----------------
async def _validation_error(request: Request, exc: IngestValidationError):
    log.info("rejected %s: %s (%s)", request.url.path, exc.message, exc.kind)
    return JSONResponse(status_code=400, content=exc.to_dict())

async def _persistence_error(request: Request, exc: PersistenceError):
    status = 504 if isinstance(exc, PersistenceTimeout) else 500
    log.error("store failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})

def create_app(engine: Engine | None = None, mqtt_enabled: bool = settings.mqtt_enabled, clock=None) -> FastAPI:
    app = FastAPI(title="Safebox Monitor API", version="0.1.0")
    add_cors(app)

    feed = LiveFeed()
    state = DeviceStateStore()
    store = SqlStore(engine, timeout=settings.persistence_timeout_seconds)
    clock = clock or utcnow
    service = TelemetryService(store, state, settings, clock=clock, live=feed.queue)

    app.state.store = store
    app.state.service = service
    app.state.health = HealthMonitor(state, store, clock=clock)
    app.state.feed = feed
    app.state.mqtt_client = None

    app.include_router(router)
    app.add_exception_handler(IngestValidationError, _validation_error)
    app.add_exception_handler(PersistenceError, _persistence_error)

    @app.on_event("startup")
    async def on_startup():
        init_db(engine)
        if mqtt_enabled:
            try:
                app.state.mqtt_client = start_mqtt(service)
            except OSError as e:
                log.error("MQTT failed to start: %s", e)
        app.state.pump = asyncio.create_task(feed.pump())

    @app.on_event("shutdown")
    async def on_shutdown():
        app.state.pump.cancel()
        if app.state.mqtt_client is not None:
            app.state.mqtt_client.loop_stop()
            app.state.mqtt_client.disconnect()
        store.close()

    @app.websocket("/ws/telemetry")
    async def telemetry_ws(websocket: WebSocket):
        await feed.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            await feed.disconnect(websocket)

    return app

app = create_app()
