"""
Trashcan Relay — Relay Engine

Bridges the MQTT bus and the browser sessions:

  bus message    → decode → route by topic kind → store insert / broadcast
  client request → verify token → validate → store update / bus publish

Both directions feed one bounded queue drained by a single worker, so store
mutations and accuracy reads never interleave and feedback for the same
detection resolves in arrival order (last write wins).
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from auth import TokenAuthenticator
from broadcast import BroadcastChannel, Session
from errors import DecodeError, InvalidRequest, NotFound, PublishFailure, RelayError, StoreFailure
from log import get_logger
from models import (
    ALLOWED_COMMANDS, AccuracySnapshot, ClientEvent, ClientMessage, DetectionPayload,
    DetectionStatus, FeedbackRequest, ManualControlRequest, TopicKind,
)
import metrics

logger = get_logger()


@dataclass(frozen=True)
class Topics:
    health: str = "trashcan/health"
    activity: str = "trashcan/activity"
    detection: str = "ml/detection"
    control: str = "trashcan/control"
    feedback: str = "ml/feedback"

    @classmethod
    def from_settings(cls, settings) -> "Topics":
        return cls(
            health=settings.TOPIC_HEALTH,
            activity=settings.TOPIC_ACTIVITY,
            detection=settings.TOPIC_DETECTION,
            control=settings.TOPIC_CONTROL,
            feedback=settings.TOPIC_FEEDBACK,
        )

    @property
    def inbound(self) -> set[str]:
        return {self.health, self.activity, self.detection}

    def kind(self, topic: str) -> TopicKind:
        return {
            self.health: TopicKind.HEALTH,
            self.activity: TopicKind.ACTIVITY,
            self.detection: TopicKind.DETECTION,
        }.get(topic, TopicKind.UNKNOWN)


def decode_payload(payload: bytes) -> Any:
    """UTF-8 JSON → Python value, or DecodeError."""
    try:
        return json.loads(payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload)
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"malformed payload: {e}") from e


def validate_request(model: type[BaseModel], data: dict[str, Any]) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ())) or "request"
        raise InvalidRequest(f"Invalid {field}: {err.get('msg')}") from None


class RelayEngine:
    def __init__(
        self,
        bus,
        store,
        authenticator: TokenAuthenticator,
        channel: BroadcastChannel,
        topics: Optional[Topics] = None,
        queue_size: int = 1000,
        drain_timeout_s: float = 5.0,
    ):
        self.bus = bus
        self.store = store
        self.authenticator = authenticator
        self.channel = channel
        self.topics = topics or Topics()
        self.queue_size = queue_size
        self.drain_timeout_s = drain_timeout_s
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None

        self._topic_handlers = {
            TopicKind.HEALTH: self._on_health,
            TopicKind.ACTIVITY: self._on_activity,
            TopicKind.DETECTION: self._on_detection,
        }
        self._client_handlers = {
            ClientEvent.MANUAL_CONTROL.value: self._on_manual_control,
            ClientEvent.ML_FEEDBACK.value: self._on_feedback,
        }

    # ═══════════════════════════════════════════════════════
    # LIFECYCLE / QUEUE
    # ═══════════════════════════════════════════════════════

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._run(), name="relay-worker")
        self.bus.on_message(self.submit_bus_message)
        self.bus.subscribe(self.topics.inbound)
        logger.info("relay.started", topics=sorted(self.topics.inbound))

    async def stop(self):
        """Process what is already queued (up to drain_timeout_s), then stop the worker."""
        if self._worker and self._queue is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.drain_timeout_s)
            except asyncio.TimeoutError:
                logger.warning("relay.drain_timeout", dropped=self._queue.qsize())
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("relay.stopped")

    async def join(self):
        """Wait until every queued item has been processed."""
        await self._queue.join()

    def submit_bus_message(self, topic: str, payload: bytes):
        """Bus callback; safe to call from the paho network thread."""
        self._loop.call_soon_threadsafe(self._enqueue, "bus", (topic, payload))

    def submit_client_message(self, session: Session, text: str) -> bool:
        if self._enqueue("client", (session, text)):
            return True
        self.channel.send(session, "error_message", {"message": "Relay busy, try again"})
        return False

    def _enqueue(self, source: str, item: tuple) -> bool:
        try:
            self._queue.put_nowait((source, item))
            return True
        except asyncio.QueueFull:
            metrics.relay_queue_drops.labels(source=source).inc()
            logger.warning("relay.queue_full", source=source)
            return False

    async def _run(self):
        while True:
            source, item = await self._queue.get()
            try:
                if source == "bus":
                    await self.handle_bus_message(*item)
                else:
                    await self.handle_client_message(*item)
            except Exception:
                logger.exception("relay.worker_error", source=source)
            finally:
                self._queue.task_done()

    # ═══════════════════════════════════════════════════════
    # INBOUND: BUS → CLIENTS
    # ═══════════════════════════════════════════════════════

    async def handle_bus_message(self, topic: str, payload: bytes):
        kind = self.topics.kind(topic)
        metrics.bus_messages.labels(kind=kind.value).inc()
        try:
            data = decode_payload(payload)
        except DecodeError as e:
            metrics.decode_errors.labels(kind=kind.value).inc()
            logger.error("relay.decode_failed", topic=topic, error=e.message)
            return

        handler = self._topic_handlers.get(kind)
        if handler is None:
            logger.info("relay.unknown_topic", topic=topic)
            return
        await handler(data)

    async def _on_health(self, data: Any):
        self.channel.broadcast("health_update", data)

    async def _on_activity(self, data: Any):
        self.channel.broadcast("chart_update", data)

    async def _on_detection(self, data: Any):
        try:
            detection = DetectionPayload.model_validate(data)
        except ValidationError as e:
            metrics.decode_errors.labels(kind=TopicKind.DETECTION.value).inc()
            logger.error("relay.decode_failed", topic=self.topics.detection, error=str(e.errors()[0].get("msg")))
            return

        try:
            detection_id = await self.store.insert(detection.item, detection.confidence)
        except StoreFailure as e:
            metrics.store_failures.labels(operation="insert").inc()
            logger.error("relay.detection_dropped", item=detection.item, error=e.message)
            return

        logger.info("detection.created", id=detection_id, item=detection.item, confidence=detection.confidence)
        self.channel.broadcast("detection_update", {
            "id": detection_id,
            "item": detection.item,
            "confidence": detection.confidence,
            "status": DetectionStatus.PENDING.value,
        })
        await self.refresh_accuracy()

    async def refresh_accuracy(self) -> AccuracySnapshot:
        """Recompute accuracy from the whole store and broadcast it."""
        try:
            value = await self.store.compute_accuracy()
        except StoreFailure as e:
            metrics.store_failures.labels(operation="accuracy").inc()
            logger.error("relay.accuracy_failed", error=e.message)
            value = 0.0
        snapshot = AccuracySnapshot.from_percentage(value)
        metrics.accuracy_percent.set(value)
        self.channel.broadcast("accuracy_update", snapshot.model_dump())
        return snapshot

    # ═══════════════════════════════════════════════════════
    # OUTBOUND: CLIENTS → BUS
    # ═══════════════════════════════════════════════════════

    async def handle_client_message(self, session: Session, text: str):
        try:
            message = ClientMessage.model_validate_json(text)
        except ValidationError:
            self._reject(session, "unknown", InvalidRequest("Malformed request"))
            return

        handler = self._client_handlers.get(message.event)
        if handler is None:
            self._reject(session, message.event, InvalidRequest(f"Unknown event: {message.event}"))
            return
        await handler(session, message.data)

    async def _on_manual_control(self, session: Session, data: dict[str, Any]):
        event = ClientEvent.MANUAL_CONTROL.value
        # Authorization, then validation, then the bus. Never reordered.
        try:
            claims = self.authenticator.verify(data.get("token"))
            request = validate_request(ManualControlRequest, data)
            if request.command not in ALLOWED_COMMANDS:
                raise InvalidRequest(f"Invalid command: {request.command}")
            self.bus.publish(
                self.topics.control,
                json.dumps({"command": request.command, "subject": claims.sub}),
            )
        except RelayError as e:
            self._reject(session, event, e)
            return

        metrics.client_requests.labels(event=event, outcome="ok").inc()
        logger.info("command.published", subject=claims.sub, command=request.command)
        self.channel.send(session, "command_ack", {"command": request.command})

    async def _on_feedback(self, session: Session, data: dict[str, Any]):
        event = ClientEvent.ML_FEEDBACK.value
        try:
            claims = self.authenticator.verify(data.get("token"))
            request = validate_request(FeedbackRequest, data)
        except RelayError as e:
            self._reject(session, event, e)
            return

        stored = True
        try:
            await self.store.set_status(request.id, DetectionStatus(request.feedback))
        except (NotFound, StoreFailure) as e:
            stored = False
            if isinstance(e, StoreFailure):
                metrics.store_failures.labels(operation="set_status").inc()
            self._reject(session, event, e)
        else:
            logger.info("feedback.recorded", subject=claims.sub, id=request.id, feedback=request.feedback)
            await self.refresh_accuracy()
            self.channel.send(session, "feedback_ack", {"id": request.id, "feedback": request.feedback})

        # Forwarded for downstream consumers whatever the store outcome.
        try:
            self.bus.publish(
                self.topics.feedback,
                json.dumps({"id": request.id, "feedback": request.feedback, "subject": claims.sub}),
            )
        except PublishFailure as e:
            self._reject(session, event, e)
            return
        if stored:
            metrics.client_requests.labels(event=event, outcome="ok").inc()

    def _reject(self, session: Session, event: str, error: RelayError):
        kind = type(error).__name__
        metrics.client_requests.labels(event=event, outcome=kind).inc()
        if isinstance(error, PublishFailure):
            metrics.publish_failures.labels(
                topic=self.topics.control if event == ClientEvent.MANUAL_CONTROL.value else self.topics.feedback
            ).inc()
        logger.warning("request.rejected", session=session.id, request=event, error=kind, detail=error.message)
        self.channel.send(session, error.event, {"message": error.message})
