"""
Trashcan Relay — Health Check Router
"""
import time
from datetime import datetime, timezone
from fastapi import APIRouter, Request

from errors import StoreFailure

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    state = request.app.state
    try:
        await state.store.compute_accuracy()
        store_status = "up"
    except StoreFailure:
        store_status = "down"

    bus_status = state.bus.state.value
    return {
        "status": "healthy" if store_status == "up" and bus_status == "connected" else "degraded",
        "service": "trashcan-relay",
        "version": "1.0.0",
        "uptime_s": round(time.time() - state.started_at, 1),
        "services": {
            "bus": bus_status,
            "store": store_status,
        },
        "sessions": state.channel.session_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
