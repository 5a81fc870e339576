"""
Shared fixtures: a deterministic broker connection and a recording
annotation sink. Nothing here talks to a real broker or Grafana.
"""
import pytest

from mqtt_grafana_bridge.config import BridgeConfig, BrokerEndpoint, GrafanaEndpoint
from mqtt_grafana_bridge.core.errors import AnnotationError, ConnectError, SubscriptionError
from mqtt_grafana_bridge.core.message import Annotation, Message
from mqtt_grafana_bridge.core.state import ConnectionEvent
from mqtt_grafana_bridge.destinations.interfaces import IAnnotationSink
from mqtt_grafana_bridge.sources.interfaces import IConnection


class FakeConnection(IConnection):
    """Emits connection events synchronously, when the test says so."""

    def __init__(self, journal: list):
        super().__init__()
        self.journal = journal
        self.subscriptions: list[tuple[str, ...]] = []
        self.connect_error: ConnectError | None = None
        self.subscribe_error: SubscriptionError | None = None
        self.after_connect = None
        self.session = 0

    def connect(self, timeout: float) -> None:
        self.journal.append(("connect", timeout))
        if self.connect_error is not None:
            raise self.connect_error
        self.simulate_connected()
        if self.after_connect is not None:
            self.after_connect(self)

    def subscribe_multiple(self, topics, qos, timeout) -> None:
        topics = tuple(topics)
        self.journal.append(("subscribe", topics))
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append(topics)

    def disconnect(self, grace_ms: int) -> None:
        self.journal.append(("disconnect", grace_ms))

    def simulate_connected(self):
        self.session += 1
        self._emit(ConnectionEvent.CONNECTED)

    def simulate_reconnecting(self):
        self._emit(ConnectionEvent.RECONNECTING)

    def deliver(self, topic: str, payload: bytes):
        self._emit(
            ConnectionEvent.MESSAGE_RECEIVED,
            Message(topic=topic, payload=payload, session=self.session),
        )


class FakeSink(IAnnotationSink):
    """Records every annotation; fails for texts listed in `failing`."""

    def __init__(self, journal: list):
        self.journal = journal
        self.created: list[tuple[str, tuple[str, ...]]] = []
        self.failing: set[str] = set()
        self.fail_all = False
        self.stopped = False

    def create(self, text, tags) -> int:
        tags = tuple(tags)
        self.journal.append(("create", text, tags))
        if self.fail_all or text in self.failing:
            raise AnnotationError("Grafana is unreachable")
        self.created.append((text, tags))
        return len(self.created)

    def list(self, tags):
        return [
            Annotation(id=i, time=0, text=text, tags=stored)
            for i, (text, stored) in enumerate(self.created, start=1)
            if set(tags) <= set(stored)
        ]

    def stop(self):
        self.stopped = True


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def journal():
    """Ordered record of the calls made against the fake connection and sink."""
    return []


@pytest.fixture
def connection(journal):
    return FakeConnection(journal)


@pytest.fixture
def sink(journal):
    return FakeSink(journal)


@pytest.fixture
def config():
    return BridgeConfig(
        broker=BrokerEndpoint(host="broker.local", port=1883),
        grafana=GrafanaEndpoint(base_url="http://grafana.local:3000"),
        client_id="bridge1",
        topics=("a", "b"),
        tags=("svc",),
    )
