"""
Trashcan Relay — Prometheus Metrics

Exposes /metrics endpoint for observability.
Tracks bus traffic, client requests, sessions and the live accuracy value.
"""
from prometheus_client import (
    Counter, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST
)
from fastapi import APIRouter, Response


router = APIRouter()

# ═══════════════════════════════════════════════════════════
# COUNTERS
# ═══════════════════════════════════════════════════════════

bus_messages = Counter(
    "relay_bus_messages_total",
    "Inbound bus messages by topic kind",
    ["kind"]
)

decode_errors = Counter(
    "relay_decode_errors_total",
    "Inbound bus messages dropped as malformed",
    ["kind"]
)

client_requests = Counter(
    "relay_client_requests_total",
    "Client requests by event and outcome",
    ["event", "outcome"]
)

publish_failures = Counter(
    "relay_publish_failures_total",
    "Outbound publishes that failed",
    ["topic"]
)

store_failures = Counter(
    "relay_store_failures_total",
    "Detection store operations that failed",
    ["operation"]
)

broadcast_drops = Counter(
    "relay_broadcast_drops_total",
    "Events dropped because a session queue was full"
)

relay_queue_drops = Counter(
    "relay_queue_drops_total",
    "Work items dropped because the relay queue was full",
    ["source"]
)

# ═══════════════════════════════════════════════════════════
# GAUGES
# ═══════════════════════════════════════════════════════════

active_sessions = Gauge(
    "relay_active_sessions",
    "Connected client sessions"
)

accuracy_percent = Gauge(
    "relay_accuracy_percent",
    "Last broadcast accuracy snapshot"
)

# ═══════════════════════════════════════════════════════════
# INFO
# ═══════════════════════════════════════════════════════════

build_info = Info(
    "relay_build",
    "Build information"
)
build_info.info({
    "version": "1.0.0",
    "service": "relay",
})


# ═══════════════════════════════════════════════════════════
# METRICS ENDPOINT
# ═══════════════════════════════════════════════════════════

@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
