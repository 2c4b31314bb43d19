"""
Trashcan Relay — MQTT Bus Client

Thin wrapper over paho-mqtt:
  - connect_async + loop_start: paho's network thread owns the socket and
    reconnects on its own with bounded backoff
  - the subscription set is re-asserted on every (re)connect
  - publish never blocks; a disconnected client or a paho error code raises
    PublishFailure for the caller to report
"""
import threading
from enum import Enum
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from errors import PublishFailure
from log import get_logger

logger = get_logger()

MessageHandler = Callable[[str, bytes], None]


class BusState(str, Enum):
    OFFLINE = "offline"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def parse_broker_url(url: str) -> tuple[str, int, bool]:
    """mqtt://host:port or mqtts://host:port -> (host, port, tls)."""
    parsed = urlparse(url if "://" in url else f"mqtt://{url}")
    tls = parsed.scheme in ("mqtts", "ssl")
    port = parsed.port or (8883 if tls else 1883)
    return parsed.hostname or "localhost", port, tls


class BusClient:
    def __init__(
        self,
        broker_url: str,
        client_id: str = "trashcan-relay",
        keepalive: int = 60,
        reconnect_min_s: int = 1,
        reconnect_max_s: int = 30,
        client: Optional[mqtt.Client] = None,
    ):
        self.broker_url = broker_url
        self.host, self.port, tls = parse_broker_url(broker_url)
        self.keepalive = keepalive
        self._topics: set[str] = set()
        self._handler: Optional[MessageHandler] = None
        self._state = BusState.OFFLINE
        self._state_lock = threading.Lock()

        self._client = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if tls and client is None:
            self._client.tls_set()
        self._client.reconnect_delay_set(min_delay=reconnect_min_s, max_delay=reconnect_max_s)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_message = self._on_message

    # ─── State ──────────────────────────────────────────────

    @property
    def state(self) -> BusState:
        return self._state

    def _set_state(self, state: BusState, **context):
        with self._state_lock:
            previous, self._state = self._state, state
        if previous != state:
            logger.info("bus.state_changed", previous=previous.value, state=state.value, **context)

    # ─── Contract ───────────────────────────────────────────

    def on_message(self, handler: MessageHandler):
        """Install the single inbound callback: handler(topic, raw_payload)."""
        self._handler = handler

    def connect(self):
        """Start connecting in the background; paho keeps reconnecting on failure."""
        logger.info("bus.connecting", host=self.host, port=self.port)
        self._set_state(BusState.RECONNECTING)
        self._client.connect_async(self.host, self.port, keepalive=self.keepalive)
        self._client.loop_start()

    def subscribe(self, topics: Iterable[str]):
        """Register interest in `topics`; applied now if connected and on every reconnect."""
        new = set(topics)
        self._topics |= new
        if self._state == BusState.CONNECTED and new:
            self._subscribe(sorted(new))

    def publish(self, topic: str, payload: str | bytes):
        if self._state != BusState.CONNECTED:
            raise PublishFailure(f"bus {self._state.value}, cannot publish to {topic}")
        try:
            info = self._client.publish(topic, payload, qos=0, retain=False)
        except (ValueError, OSError) as e:
            raise PublishFailure(f"publish to {topic} failed: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishFailure(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def disconnect(self):
        self._set_state(BusState.OFFLINE)
        self._client.disconnect()
        self._client.loop_stop()

    # ─── paho callbacks (network thread) ────────────────────

    def _subscribe(self, topics: list[str]):
        result, _mid = self._client.subscribe([(t, 0) for t in topics])
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("bus.subscribe_failed", topics=topics, error=mqtt.error_string(result))

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error("bus.connect_refused", reason=str(reason_code))
            self._set_state(BusState.RECONNECTING)
            return
        self._set_state(BusState.CONNECTED, broker=self.broker_url)
        if self._topics:
            self._subscribe(sorted(self._topics))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        if self._state == BusState.OFFLINE:
            return
        logger.warning("bus.disconnected", reason=str(reason_code))
        self._set_state(BusState.RECONNECTING)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        for rc in reason_code_list:
            if rc.is_failure:
                logger.error("bus.subscribe_rejected", mid=mid, reason=str(rc))

    def _on_message(self, client, userdata, msg):
        if self._handler is None:
            logger.warning("bus.no_handler", topic=msg.topic)
            return
        self._handler(msg.topic, msg.payload)
