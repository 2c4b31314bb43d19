"""
Trashcan Relay — Detections Router
Read-only views over the detection log for the dashboard's initial load.
"""
from fastapi import APIRouter, HTTPException, Path, Query, Request

from errors import NotFound, StoreFailure
from models import MAX_DETECTION_ID, AccuracySnapshot

router = APIRouter()


@router.get("")
async def list_detections(request: Request, limit: int = Query(50, ge=1, le=500)):
    """Most recent detections, newest first."""
    try:
        records = await request.app.state.store.recent(limit)
    except StoreFailure as e:
        raise HTTPException(status_code=503, detail=e.message)
    return {"detections": [r.model_dump() for r in records], "total": len(records)}


@router.get("/accuracy")
async def get_accuracy(request: Request):
    try:
        value = await request.app.state.store.compute_accuracy()
    except StoreFailure as e:
        raise HTTPException(status_code=503, detail=e.message)
    return AccuracySnapshot.from_percentage(value).model_dump()


@router.get("/{detection_id}")
async def get_detection(request: Request, detection_id: int = Path(..., ge=1, le=MAX_DETECTION_ID)):
    try:
        record = await request.app.state.store.get(detection_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Detection not found")
    except StoreFailure as e:
        raise HTTPException(status_code=503, detail=e.message)
    return record.model_dump()
