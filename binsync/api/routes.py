from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Request

from binsync.engine import SyncEngine
from binsync.models.schemas import (
    BinUpdateRequest,
    CollectionInput,
    SensorReadingRequest,
)

router = APIRouter(prefix="/api")


def _engine(request: Request) -> SyncEngine:
    return request.app.state.engine


@router.get("/bins")
async def list_bins(request: Request) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in _engine(request).bins()]


@router.post("/bins", status_code=201)
async def create_bin(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    return _engine(request).add_bin(payload).model_dump(mode="json")


@router.get("/bins/{bin_id}")
async def get_bin(bin_id: str, request: Request) -> dict[str, Any]:
    bin_record = _engine(request).repository.get_bin(bin_id)
    if bin_record is None:
        raise HTTPException(status_code=404, detail="Bin not found")
    return bin_record.model_dump(mode="json")


@router.patch("/bins/{bin_id}")
async def update_bin(bin_id: str, request: Request, payload: BinUpdateRequest) -> dict[str, Any]:
    updated = _engine(request).update_bin(bin_id, payload.model_dump(exclude_none=True))
    if updated is None:
        raise HTTPException(status_code=404, detail="Bin not found")
    return updated.model_dump(mode="json")


@router.delete("/bins/{bin_id}")
async def delete_bin(bin_id: str, request: Request, deleted_by: str | None = None) -> dict[str, Any]:
    removed = _engine(request).delete_bin(bin_id, deleted_by)
    if removed is None:
        raise HTTPException(status_code=404, detail="Bin not found")
    return {"ok": True, "bin_id": bin_id}


@router.post("/bins/{bin_id}/readings")
async def post_reading(bin_id: str, request: Request, payload: SensorReadingRequest) -> dict[str, Any]:
    if not payload.model_dump(exclude_none=True):
        raise HTTPException(status_code=422, detail="Reading carries no values")
    updated = _engine(request).apply_sensor_reading(bin_id, **payload.model_dump())
    if updated is None:
        raise HTTPException(status_code=404, detail="Bin not found")
    return updated.model_dump(mode="json")


@router.get("/bins/{bin_id}/history")
async def get_history(bin_id: str, request: Request) -> dict[str, Any]:
    repository = _engine(request).repository
    if repository.get_bin(bin_id) is None:
        raise HTTPException(status_code=404, detail="Bin not found")
    items = [entry.model_dump(mode="json") for entry in repository.bin_history(bin_id)]
    return {"bin_id": bin_id, "count": len(items), "items": items}


@router.post("/sensors", status_code=201)
async def register_sensor(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    if not payload.get("id"):
        raise HTTPException(status_code=422, detail="Sensor id is required")
    repository = _engine(request).repository
    bin_id = payload.pop("bin_id", None)
    if bin_id and repository.get_bin(bin_id) is None:
        raise HTTPException(status_code=404, detail="Bin not found")
    sensor = repository.add_sensor(payload)
    if bin_id:
        sensor = repository.link_sensor(sensor.id, bin_id) or sensor
    return sensor.model_dump(mode="json")


@router.post("/collections", status_code=201)
async def create_collection(request: Request, payload: CollectionInput) -> dict[str, Any]:
    return _engine(request).add_collection(payload).model_dump(mode="json")


@router.get("/collections")
async def list_collections(
    request: Request,
    bin_id: str | None = Query(default=None),
    driver_id: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    items = _engine(request).repository.collections()
    if bin_id is not None:
        items = [item for item in items if item.bin_id == bin_id]
    if driver_id is not None:
        items = [item for item in items if item.driver_id == driver_id]
    return [item.model_dump(mode="json") for item in items]


@router.get("/alerts")
async def list_alerts(
    request: Request,
    status: Literal["active", "all"] = Query(default="active"),
) -> list[dict[str, Any]]:
    repository = _engine(request).repository
    items = repository.active_alerts() if status == "active" else repository.alerts()
    return [item.model_dump(mode="json") for item in items]


@router.post("/alerts/{alert_id}/dismiss")
async def dismiss_alert(alert_id: str, request: Request) -> dict[str, Any]:
    alert = _engine(request).dismiss_alert(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert.model_dump(mode="json")


@router.get("/insights")
async def get_insights(request: Request) -> dict[str, Any]:
    engine = _engine(request)
    return {"insights": engine.insights(), "forecasts": engine.forecasts()}


@router.get("/recommendations")
async def get_recommendations(request: Request) -> dict[str, Any]:
    return _engine(request).recommendations()


@router.get("/metrics")
async def get_metrics(request: Request) -> dict[str, Any]:
    return _engine(request).get_metrics().model_dump(mode="json")


@router.get("/reports/{report_type}")
async def get_report(report_type: str, request: Request) -> dict[str, Any]:
    options = dict(request.query_params)
    return _engine(request).generate_report(report_type, options).model_dump(mode="json")


@router.post("/pipelines/{name}/trigger")
async def trigger_pipeline(name: str, request: Request) -> dict[str, Any]:
    result = await _engine(request).trigger(name)
    return asdict(result)
