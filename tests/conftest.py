"""
Shared fakes for the relay tests: an in-memory bus and a recording channel.
"""
import sys
from pathlib import Path

import pytest

# Add service path
sys.path.insert(0, str(Path(__file__).parent.parent / "services" / "relay"))

from bus import BusState  # noqa: E402
from errors import PublishFailure  # noqa: E402

SECRET = "relay-test-secret-0123456789abcdef"


class FakeBus:
    """Records publishes instead of talking to a broker."""

    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.subscribed: set[str] = set()
        self.handler = None
        self.fail_publish = False
        self.state = BusState.OFFLINE

    def on_message(self, handler):
        self.handler = handler

    def connect(self):
        self.state = BusState.CONNECTED

    def disconnect(self):
        self.state = BusState.OFFLINE

    def subscribe(self, topics):
        self.subscribed |= set(topics)

    def publish(self, topic, payload):
        if self.fail_publish:
            raise PublishFailure(f"bus offline, cannot publish to {topic}")
        self.published.append((topic, payload))


class FakeSession:
    def __init__(self, session_id: str = "s1"):
        self.id = session_id


class RecordingChannel:
    """BroadcastChannel stand-in that keeps what would have been sent."""

    def __init__(self):
        self.broadcasts: list[tuple[str, object]] = []
        self.sent: list[tuple[str, str, object]] = []

    def broadcast(self, event, data):
        self.broadcasts.append((event, data))
        return 1

    def send(self, session, event, data):
        self.sent.append((session.id, event, data))
        return True

    def events(self, name):
        return [data for event, data in self.broadcasts if event == name]


@pytest.fixture
def fake_bus():
    return FakeBus()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def authenticator():
    from auth import TokenAuthenticator
    return TokenAuthenticator(SECRET, expiry_hours=12)


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'trashcan.db'}"
