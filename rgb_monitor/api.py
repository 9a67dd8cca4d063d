from __future__ import annotations

import concurrent.futures
import threading
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from .config import APP_NAME, RENDER_TIMEOUT_SECONDS, WORKER_CAP, logger
from .explorer import Explorer, create_backend
from .rgb_timeseries import BackendUnavailableError
from .sensors import DEFAULT_INDEX, DEFAULT_RGB, DEFAULT_SENSOR, INDEX_NAMES, RGB_PRESETS, SENSORS
from .session import DEFAULT_LAT, DEFAULT_LON, ExplorerSession
from .sinks import PanelSink

app = FastAPI(
    title=f"{APP_NAME} API",
    version="1.0.0",
    description="Point-driven RGB-colored index time series from HLS or Earth Engine imagery",
)

_OPERATIONS: Dict[str, Dict[str, Any]] = {}
_OPERATIONS_LOCK = threading.Lock()
MAX_OPERATIONS = 256
OPERATION_TTL_SECONDS = 3600

_BACKENDS: Dict[str, Any] = {}
_BACKENDS_LOCK = threading.Lock()

_EXECUTOR = concurrent.futures.ThreadPoolExecutor(max_workers=max(2, WORKER_CAP), thread_name_prefix="rgb-api")


class ChartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lon: float = Field(DEFAULT_LON, ge=-180, le=180)
    lat: float = Field(DEFAULT_LAT, ge=-90, le=90)
    sensor: str = DEFAULT_SENSOR
    index: str = DEFAULT_INDEX
    rgb: str = DEFAULT_RGB
    duration: int = Field(12, ge=1, le=24)
    cloud: int = Field(30, ge=0, le=100)
    chip_width: int = Field(2, alias="chipWidth", ge=1, le=10)
    include_chips: bool = Field(False, alias="includeChips")
    end_date: Optional[date] = Field(None, alias="endDate")


def _isoformat_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _get_backend(name: str) -> Any:
    with _BACKENDS_LOCK:
        if name not in _BACKENDS:
            _BACKENDS[name] = create_backend(name)
        return _BACKENDS[name]


def _validate_names(request: ChartRequest) -> None:
    if request.sensor not in SENSORS:
        raise HTTPException(status_code=400, detail=f"Unknown sensor '{request.sensor}'. Choose one of {list(SENSORS)}")
    if request.index not in INDEX_NAMES:
        raise HTTPException(status_code=400, detail=f"Unknown index '{request.index}'. Choose one of {INDEX_NAMES}")
    if request.rgb not in RGB_PRESETS:
        raise HTTPException(status_code=400, detail=f"Unknown RGB preset '{request.rgb}'. Choose one of {list(RGB_PRESETS)}")


def _evict_operations(now: datetime) -> None:
    # Caller holds _OPERATIONS_LOCK; dict order is creation order.
    for op_id in list(_OPERATIONS):
        state = _OPERATIONS[op_id]
        age = (now - state["updated_at"]).total_seconds()
        if state["status"] != "processing" and age > OPERATION_TTL_SECONDS:
            _OPERATIONS.pop(op_id, None)
    while len(_OPERATIONS) >= MAX_OPERATIONS:
        oldest = next(iter(_OPERATIONS))
        logger.info("Evicting operation %s", oldest)
        _OPERATIONS.pop(oldest, None)


def _init_operation(request: ChartRequest) -> str:
    op_id = str(uuid4())
    now = datetime.now(timezone.utc)
    with _OPERATIONS_LOCK:
        _evict_operations(now)
        _OPERATIONS[op_id] = {
            "status": "processing",
            "created_at": now,
            "updated_at": now,
            "request": request.model_dump(by_alias=True, mode="json"),
            "sink": PanelSink(),
            "message": None,
            "result": None,
            "error": None,
        }
    return op_id


def _update_operation(op_id: str, *, status: Optional[str] = None, result: Optional[Dict[str, Any]] = None,
                      error: Optional[str] = None) -> None:
    with _OPERATIONS_LOCK:
        state = _OPERATIONS.get(op_id)
        if not state:
            return
        if status:
            state["status"] = status
        if result is not None:
            state["result"] = result
        if error is not None:
            state["error"] = error
        if status and status != "processing" and state.get("sink") is not None:
            # Finished operations keep only the text, not the sink and its figure.
            state["message"] = state["sink"].message
            state["sink"] = None
        state["updated_at"] = datetime.now(timezone.utc)


def _get_operation(op_id: str) -> Optional[Dict[str, Any]]:
    with _OPERATIONS_LOCK:
        state = _OPERATIONS.get(op_id)
        if state is None:
            return None
        return dict(state)


def _run_chart_job(op_id: str, request: ChartRequest) -> None:
    state = _get_operation(op_id)
    if state is None:
        return
    sink: PanelSink = state["sink"]
    session = ExplorerSession(
        run=True,
        sensor=request.sensor,
        lon=request.lon,
        lat=request.lat,
        index=request.index,
        rgb=request.rgb,
        duration=request.duration,
        cloud=request.cloud,
        chip_width=request.chip_width,
        clicked=True,
    )
    backend_name = SENSORS[request.sensor].backend
    try:
        explorer = Explorer(sink, backends={backend_name: _get_backend(backend_name)}, executor=_EXECUTOR)
        job = explorer.render_graphics(session, today=request.end_date)
        rendered = job.chart.result(timeout=RENDER_TIMEOUT_SECONDS)
        chips: List[Dict[str, str]] = []
        if request.include_chips:
            chips = [
                {"date": chip.date, "image": chip.data_uri()}
                for chip in job.chip_results(timeout=RENDER_TIMEOUT_SECONDS)
            ]
        else:
            job.chips.cancel()
    except Exception as exc:
        logger.exception("Chart job failed for operation %s", op_id)
        message = str(exc) if isinstance(exc, BackendUnavailableError) else f"{type(exc).__name__}: {exc}"
        _update_operation(op_id, status="error", error=message)
        return

    result = {
        "band": rendered.chart.y_axis_band,
        "start": job.start.isoformat(),
        "end": job.end.isoformat(),
        "points": rendered.chart.to_records(),
        "colors": rendered.chart.colors,
    }
    if request.include_chips:
        result["chips"] = chips
    _update_operation(op_id, status=sink.state, result=result)


@app.get("/sensors")
def list_sensors() -> Dict[str, Any]:
    return {
        "sensors": [
            {
                "name": sensor.name,
                "backend": sensor.backend,
                "collections": list(sensor.collections),
                "scale": sensor.scale,
            }
            for sensor in SENSORS.values()
        ],
        "indices": INDEX_NAMES,
        "rgbPresets": list(RGB_PRESETS),
    }


@app.post("/charts", status_code=202)
def create_chart(request: ChartRequest, background_tasks: BackgroundTasks) -> Dict[str, Any]:
    _validate_names(request)
    operation_id = _init_operation(request)
    background_tasks.add_task(_run_chart_job, operation_id, request)
    return {"operation_id": operation_id, "status": "accepted"}


@app.get("/charts/{operation_id}")
def get_chart(operation_id: str) -> Dict[str, Any]:
    state = _get_operation(operation_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Operation not found")

    created_at = state.get("created_at")
    updated_at = state.get("updated_at")
    payload = {
        "operation_id": operation_id,
        "status": state.get("status") or "unknown",
        "created_at": _isoformat_utc(created_at) if created_at else None,
        "updated_at": _isoformat_utc(updated_at) if updated_at else None,
        "request": state.get("request"),
        "message": state["sink"].message if state.get("sink") is not None else state.get("message"),
        "errorMessage": state.get("error"),
    }
    if state.get("result") is not None:
        payload["result"] = state["result"]
    return jsonable_encoder(payload)
