"""
Trashcan Relay — Unit Tests: collaborators

Tests:
1. Token authenticator (issue, verify, opaque failures)
2. Detection store (insert, status, accuracy)
3. Bus client (state, publish failures, resubscribe)
4. Broadcast channel (fan-out, ordering, limits)
5. Configuration
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import jwt
import paho.mqtt.client as mqtt
import pytest

from conftest import SECRET


def run(coro):
    return asyncio.run(coro)


# ═══════════════════════════════════════════════════════════
# 1. Token Authenticator
# ═══════════════════════════════════════════════════════════

class TestTokenAuthenticator:

    def test_issue_and_verify(self, authenticator):
        token = authenticator.issue("admin")
        claims = authenticator.verify(token)
        assert claims.sub == "admin"
        assert claims.exp - claims.iat == 12 * 3600

    def test_missing_token(self, authenticator):
        from errors import Unauthorized
        with pytest.raises(Unauthorized):
            authenticator.verify(None)
        with pytest.raises(Unauthorized):
            authenticator.verify("")

    def test_malformed_token(self, authenticator):
        from errors import Unauthorized
        with pytest.raises(Unauthorized):
            authenticator.verify("not-a-jwt")

    def test_expired_token(self, authenticator):
        from errors import Unauthorized
        stale = datetime.now(timezone.utc) - timedelta(hours=13)
        token = authenticator.issue("admin", now=stale)
        with pytest.raises(Unauthorized):
            authenticator.verify(token)

    def test_wrong_secret(self, authenticator):
        from auth import TokenAuthenticator
        from errors import Unauthorized
        token = TokenAuthenticator("another-secret-0123456789abcdef-xyz").issue("admin")
        with pytest.raises(Unauthorized):
            authenticator.verify(token)

    def test_missing_subject(self, authenticator):
        from errors import Unauthorized
        now = datetime.now(timezone.utc)
        token = jwt.encode({"iat": now, "exp": now + timedelta(hours=1)}, SECRET, algorithm="HS256")
        with pytest.raises(Unauthorized):
            authenticator.verify(token)

    def test_failures_are_indistinguishable(self, authenticator):
        from errors import Unauthorized
        stale = authenticator.issue("admin", now=datetime.now(timezone.utc) - timedelta(days=1))
        messages = set()
        for token in (None, "garbage", stale):
            with pytest.raises(Unauthorized) as exc:
                authenticator.verify(token)
            messages.add(exc.value.message)
        assert len(messages) == 1

    def test_empty_secret_rejected(self):
        from auth import TokenAuthenticator
        with pytest.raises(ValueError):
            TokenAuthenticator("")


# ═══════════════════════════════════════════════════════════
# 2. Detection Store
# ═══════════════════════════════════════════════════════════

class TestDetectionStore:

    def test_insert_assigns_increasing_ids(self, db_url):
        from db.detections import DetectionStore

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            first = await store.insert("bottle", 92)
            second = await store.insert("can", 71.5)
            record = await store.get(first)
            await store.close()
            return first, second, record

        first, second, record = run(scenario())
        assert (first, second) == (1, 2)
        assert record.item == "bottle"
        assert record.confidence == 92
        assert record.status.value == "pending"
        assert record.timestamp is not None

    def test_accuracy_empty_store(self, db_url):
        from db.detections import DetectionStore

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            empty = await store.compute_accuracy()
            await store.insert("bottle", 50)
            all_pending = await store.compute_accuracy()
            await store.close()
            return empty, all_pending

        assert run(scenario()) == (0.0, 0.0)

    def test_accuracy_mixed(self, db_url):
        from db.detections import DetectionStore
        from models import DetectionStatus

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            ids = [await store.insert(f"item-{i}", 80) for i in range(6)]
            for i in ids[:3]:
                await store.set_status(i, DetectionStatus.CORRECT)
            await store.set_status(ids[3], DetectionStatus.INCORRECT)
            value = await store.compute_accuracy()
            await store.close()
            return value

        assert run(scenario()) == 75.0

    def test_last_write_wins(self, db_url):
        from db.detections import DetectionStore
        from models import DetectionStatus

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            det = await store.insert("bottle", 92)
            await store.set_status(det, DetectionStatus.INCORRECT)
            await store.set_status(det, DetectionStatus.CORRECT)
            record = await store.get(det)
            value = await store.compute_accuracy()
            await store.close()
            return record, value

        record, value = run(scenario())
        assert record.status.value == "correct"
        assert value == 100.0

    def test_set_status_unknown_id(self, db_url):
        from db.detections import DetectionStore
        from errors import NotFound
        from models import DetectionStatus

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            await store.insert("bottle", 92)
            with pytest.raises(NotFound):
                await store.set_status(99, DetectionStatus.CORRECT)
            records = await store.recent()
            await store.close()
            return records

        records = run(scenario())
        assert [r.status.value for r in records] == ["pending"]

    def test_cannot_reset_to_pending(self, db_url):
        from db.detections import DetectionStore
        from models import DetectionStatus

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            det = await store.insert("bottle", 92)
            with pytest.raises(ValueError):
                await store.set_status(det, DetectionStatus.PENDING)
            await store.close()

        run(scenario())

    def test_recent_newest_first(self, db_url):
        from db.detections import DetectionStore

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            for item in ("a", "b", "c"):
                await store.insert(item, 10)
            records = await store.recent(limit=2)
            await store.close()
            return records

        assert [r.item for r in run(scenario())] == ["c", "b"]

    def test_survives_restart(self, db_url):
        from db.detections import DetectionStore

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            await store.insert("bottle", 92)
            await store.close()

            reopened = DetectionStore(db_url)
            await reopened.init()
            next_id = await reopened.insert("can", 60)
            records = await reopened.recent()
            await reopened.close()
            return next_id, records

        next_id, records = run(scenario())
        assert next_id == 2
        assert len(records) == 2

    def test_out_of_range_id_is_store_failure(self, db_url):
        from db.detections import DetectionStore
        from errors import StoreFailure
        from models import DetectionStatus

        async def scenario():
            store = DetectionStore(db_url)
            await store.init()
            await store.insert("bottle", 92)
            with pytest.raises(StoreFailure):
                await store.set_status(2**64, DetectionStatus.CORRECT)
            with pytest.raises(StoreFailure):
                await store.get(2**64)
            # lock released, store still usable
            await store.set_status(1, DetectionStatus.CORRECT)
            value = await store.compute_accuracy()
            await store.close()
            return value

        assert run(scenario()) == 100.0

    def test_failed_init_recovers_on_next_call(self, tmp_path):
        from db.detections import DetectionStore
        from errors import StoreFailure

        blocker = tmp_path / "data"
        blocker.write_text("not a directory")
        url = f"sqlite+aiosqlite:///{blocker / 'trashcan.db'}"

        async def scenario():
            store = DetectionStore(url)
            with pytest.raises(StoreFailure):
                await store.init()
            with pytest.raises(StoreFailure):
                await store.compute_accuracy()

            blocker.unlink()
            det = await store.insert("bottle", 92)
            records = await store.recent()
            await store.close()
            return det, records

        det, records = run(scenario())
        assert det == 1
        assert [r.item for r in records] == ["bottle"]


# ═══════════════════════════════════════════════════════════
# 3. Bus Client
# ═══════════════════════════════════════════════════════════

class _Reason:
    def __init__(self, failure=False):
        self.is_failure = failure

    def __str__(self):
        return "Failure" if self.is_failure else "Success"


def _mock_paho():
    client = MagicMock()
    client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    return client


class TestBusClient:

    def test_parse_broker_url(self):
        from bus import parse_broker_url
        assert parse_broker_url("mqtt://broker.local:1884") == ("broker.local", 1884, False)
        assert parse_broker_url("mqtts://broker.local") == ("broker.local", 8883, True)
        assert parse_broker_url("localhost") == ("localhost", 1883, False)

    def test_publish_while_offline_fails(self):
        from bus import BusClient
        from errors import PublishFailure
        client = _mock_paho()
        bus = BusClient("mqtt://localhost", client=client)
        with pytest.raises(PublishFailure):
            bus.publish("trashcan/control", "F")
        client.publish.assert_not_called()

    def test_connect_subscribes_and_publishes(self):
        from bus import BusClient, BusState
        client = _mock_paho()
        bus = BusClient("mqtt://localhost", client=client)
        bus.subscribe({"trashcan/health", "ml/detection"})
        bus.connect()
        assert bus.state == BusState.RECONNECTING
        client.connect_async.assert_called_once_with("localhost", 1883, keepalive=60)
        client.loop_start.assert_called_once()

        bus._on_connect(client, None, {}, _Reason())
        assert bus.state == BusState.CONNECTED
        client.subscribe.assert_called_with([("ml/detection", 0), ("trashcan/health", 0)])

        bus.publish("trashcan/control", "F")
        client.publish.assert_called_with("trashcan/control", "F", qos=0, retain=False)

    def test_resubscribes_after_reconnect(self):
        from bus import BusClient, BusState
        client = _mock_paho()
        bus = BusClient("mqtt://localhost", client=client)
        bus.subscribe({"trashcan/health"})
        bus._on_connect(client, None, {}, _Reason())
        bus._on_disconnect(client, None, {}, _Reason(failure=True))
        assert bus.state == BusState.RECONNECTING
        bus._on_connect(client, None, {}, _Reason())
        assert client.subscribe.call_count == 2

    def test_refused_connection_stays_reconnecting(self):
        from bus import BusClient, BusState
        client = _mock_paho()
        bus = BusClient("mqtt://localhost", client=client)
        bus.subscribe({"trashcan/health"})
        bus._on_connect(client, None, {}, _Reason(failure=True))
        assert bus.state == BusState.RECONNECTING
        client.subscribe.assert_not_called()

    def test_publish_error_code(self):
        from bus import BusClient
        from errors import PublishFailure
        client = _mock_paho()
        client.publish.return_value.rc = mqtt.MQTT_ERR_NO_CONN
        bus = BusClient("mqtt://localhost", client=client)
        bus._on_connect(client, None, {}, _Reason())
        with pytest.raises(PublishFailure):
            bus.publish("trashcan/control", "F")

    def test_message_delivered_to_handler(self):
        from bus import BusClient
        client = _mock_paho()
        bus = BusClient("mqtt://localhost", client=client)
        received = []
        bus.on_message(lambda topic, payload: received.append((topic, payload)))
        msg = MagicMock(topic="trashcan/health", payload=b'{"battery": 80}')
        bus._on_message(client, None, msg)
        assert received == [("trashcan/health", b'{"battery": 80}')]

    def test_disconnect_goes_offline(self):
        from bus import BusClient, BusState
        client = _mock_paho()
        bus = BusClient("mqtt://localhost", client=client)
        bus._on_connect(client, None, {}, _Reason())
        bus.disconnect()
        assert bus.state == BusState.OFFLINE
        client.loop_stop.assert_called_once()


# ═══════════════════════════════════════════════════════════
# 4. Broadcast Channel
# ═══════════════════════════════════════════════════════════

class FakeWebSocket:
    def __init__(self, fail=False):
        self.frames: list[str] = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(text)


class TestBroadcastChannel:

    def test_broadcast_preserves_order_per_session(self):
        import json
        from broadcast import BroadcastChannel

        async def scenario():
            channel = BroadcastChannel()
            sockets = [FakeWebSocket(), FakeWebSocket()]
            sessions = [channel.register(ws) for ws in sockets]
            for n in range(5):
                channel.broadcast("health_update", {"seq": n})
            await asyncio.sleep(0.05)
            for s in sessions:
                await channel.unregister(s)
            return sockets

        for ws in run(scenario()):
            seqs = [json.loads(f)["data"]["seq"] for f in ws.frames]
            assert seqs == [0, 1, 2, 3, 4]

    def test_send_is_session_local(self):
        import json
        from broadcast import BroadcastChannel

        async def scenario():
            channel = BroadcastChannel()
            a, b = FakeWebSocket(), FakeWebSocket()
            sa = channel.register(a)
            sb = channel.register(b)
            channel.send(sa, "authorization_error", {"message": "nope"})
            await asyncio.sleep(0.05)
            await channel.close()
            return a, b

        a, b = run(scenario())
        assert json.loads(a.frames[0])["event"] == "authorization_error"
        assert b.frames == []

    def test_session_limit(self):
        from broadcast import BroadcastChannel

        async def scenario():
            channel = BroadcastChannel(max_sessions=1)
            first = channel.register(FakeWebSocket())
            second = channel.register(FakeWebSocket())
            count = channel.session_count
            await channel.close()
            return first, second, count

        first, second, count = run(scenario())
        assert first is not None
        assert second is None
        assert count == 1

    def test_full_session_queue_drops(self):
        from broadcast import BroadcastChannel

        async def scenario():
            channel = BroadcastChannel(session_queue_size=2)
            session = channel.register(FakeWebSocket())
            # No await between puts: the writer task has not run yet
            results = [channel.broadcast("chart_update", {"n": n}) for n in range(3)]
            await channel.close()
            return session, results

        _, results = run(scenario())
        assert results == [1, 1, 0]

    def test_dead_socket_does_not_break_others(self):
        from broadcast import BroadcastChannel

        async def scenario():
            channel = BroadcastChannel()
            channel.register(FakeWebSocket(fail=True))
            good = FakeWebSocket()
            channel.register(good)
            channel.broadcast("health_update", {"ok": True})
            channel.broadcast("health_update", {"ok": True})
            await asyncio.sleep(0.05)
            await channel.close()
            return good

        assert len(run(scenario()).frames) == 2


# ═══════════════════════════════════════════════════════════
# 5. Configuration
# ═══════════════════════════════════════════════════════════

class TestSettings:

    def test_users_parsing(self):
        from config import Settings
        s = Settings(RELAY_USERS="admin:1234, user:abcd ,broken")
        assert s.users == {"admin": "1234", "user": "abcd"}

    def test_topic_defaults(self):
        from config import Settings
        from relay import Topics
        topics = Topics.from_settings(Settings())
        assert topics.inbound == {"trashcan/health", "trashcan/activity", "ml/detection"}
        assert topics.control == "trashcan/control"
