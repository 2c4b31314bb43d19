"""
Trashcan Relay — FastAPI Backend

Wires the collaborators together at startup:
  BusClient (MQTT) ─┐
  DetectionStore ───┼─→ RelayEngine ─→ BroadcastChannel ─→ /ws sessions
  TokenAuthenticator┘

Every collaborator can be injected through create_app() so tests run against
fakes instead of a broker.
"""
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from auth import TokenAuthenticator
from broadcast import BroadcastChannel
from bus import BusClient
from config import Settings, settings as default_settings
from db.detections import DetectionStore
from errors import StoreFailure
from log import get_logger
from relay import RelayEngine, Topics
import metrics
from routers import auth as auth_router, detections, health, ws

logger = get_logger()


def create_app(
    settings: Optional[Settings] = None,
    bus=None,
    store=None,
    authenticator: Optional[TokenAuthenticator] = None,
) -> FastAPI:
    settings = settings or default_settings
    bus = bus or BusClient(
        settings.MQTT_BROKER_URL,
        client_id=settings.MQTT_CLIENT_ID,
        keepalive=settings.MQTT_KEEPALIVE_S,
        reconnect_min_s=settings.MQTT_RECONNECT_MIN_S,
        reconnect_max_s=settings.MQTT_RECONNECT_MAX_S,
    )
    store = store or DetectionStore(settings.DATABASE_URL, timeout_s=settings.STORE_TIMEOUT_S, echo=settings.APP_DEBUG)
    authenticator = authenticator or TokenAuthenticator(settings.JWT_SECRET, settings.JWT_EXPIRY_HOURS)
    channel = BroadcastChannel(max_sessions=settings.MAX_SESSIONS, session_queue_size=settings.SESSION_QUEUE_SIZE)
    relay = RelayEngine(
        bus, store, authenticator, channel,
        topics=Topics.from_settings(settings),
        queue_size=settings.RELAY_QUEUE_SIZE,
        drain_timeout_s=settings.RELAY_DRAIN_TIMEOUT_S,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup — store first, then the relay worker, then the bus."""
        logger.info("relay.starting", env=settings.APP_ENV, broker=settings.MQTT_BROKER_URL)
        try:
            await store.init()
        except StoreFailure as e:
            # Each store call retries the connection until it comes back.
            logger.error("store.unavailable", error=e.message)
        await relay.start()
        bus.connect()
        yield

        bus.disconnect()
        await relay.stop()
        await channel.close()
        await store.close()
        logger.info("relay.shutdown")

    app = FastAPI(
        title="Trashcan Relay",
        description="MQTT ↔ WebSocket relay with authenticated control and detection feedback",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.bus = bus
    app.state.store = store
    app.state.authenticator = authenticator
    app.state.channel = channel
    app.state.relay = relay
    app.state.users = settings.users
    app.state.started_at = time.time()

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.debug(
            "http.request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(metrics.router, tags=["Metrics"])
    app.include_router(auth_router.router, tags=["Auth"])
    app.include_router(detections.router, prefix="/api/v1/detections", tags=["Detections"])
    app.include_router(ws.router, tags=["Realtime"])
    return app


app = create_app()
