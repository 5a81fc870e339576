"""
Tests for sources.mqttsource

The paho client is a MagicMock; broker packets are simulated by calling the
paho callbacks the way the network thread would.
"""
from dataclasses import replace
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest
from loguru import logger

from mqtt_grafana_bridge.config import BrokerEndpoint
from mqtt_grafana_bridge.core.errors import ConnectError, SubscriptionError
from mqtt_grafana_bridge.core.message import Message
from mqtt_grafana_bridge.core.state import ConnectionEvent
from mqtt_grafana_bridge.sources.mqttsource import MqttSource


# ── Helpers ───────────────────────────────────────────────────────────────────

def _code(failure: bool = False, name: str = "Success"):
    code = MagicMock()
    code.is_failure = failure
    code.__str__.return_value = name
    return code


def _paho_message(topic: str, payload: bytes):
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload
    return msg


class Recorder:
    def __init__(self, source: MqttSource):
        self.events = []
        source.add_handler(ConnectionEvent.CONNECTED, lambda: self.events.append("connected"))
        source.add_handler(ConnectionEvent.RECONNECTING, lambda: self.events.append("reconnecting"))
        source.add_handler(ConnectionEvent.MESSAGE_RECEIVED, self.events.append)


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def source(config, client):
    source = MqttSource(config, client=client)
    yield source
    source._stop_dispatcher(1.0)


def _accept_connection(source, client):
    client.loop_start.side_effect = lambda: source._on_connect(client, None, {}, _code(), None)


# ── connect ───────────────────────────────────────────────────────────────────

def test_connect_waits_for_connack(source, client, config):
    recorder = Recorder(source)
    _accept_connection(source, client)

    source.connect(timeout=1.0)
    source._events.join()

    client.connect.assert_called_once_with("broker.local", 1883, config.keepalive)
    assert recorder.events == ["connected"]


def test_connect_refused_by_broker(source, client):
    client.loop_start.side_effect = lambda: source._on_connect(
        client, None, {}, _code(failure=True, name="Not authorized"), None
    )

    with pytest.raises(ConnectError, match="Not authorized"):
        source.connect(timeout=1.0)
    client.loop_stop.assert_called()


def test_connect_without_answer_times_out(source, client):
    with pytest.raises(ConnectError, match="did not acknowledge"):
        source.connect(timeout=0.05)


def test_unreachable_broker(source, client):
    client.connect.side_effect = ConnectionRefusedError("refused")

    with pytest.raises(ConnectError, match="Could not reach"):
        source.connect(timeout=1.0)
    client.loop_start.assert_not_called()


# ── subscribe ─────────────────────────────────────────────────────────────────

def test_subscribe_multiple_waits_for_suback(source, client):
    def subscribe(topics):
        source._on_subscribe(client, None, 5, [_code(), _code()], None)
        return mqtt.MQTT_ERR_SUCCESS, 5

    client.subscribe.side_effect = subscribe

    source.subscribe_multiple(["a", "b"], 0, timeout=1.0)

    client.subscribe.assert_called_once_with([("a", 0), ("b", 0)])


def test_subscribe_not_confirmed(source, client):
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 9)

    with pytest.raises(SubscriptionError, match="not confirmed"):
        source.subscribe_multiple(["a"], 0, timeout=0.05)


def test_subscribe_rejected_topic(source, client):
    def subscribe(topics):
        source._on_subscribe(client, None, 3, [_code(), _code(failure=True)], None)
        return mqtt.MQTT_ERR_SUCCESS, 3

    client.subscribe.side_effect = subscribe

    with pytest.raises(SubscriptionError, match="rejected subscription to b"):
        source.subscribe_multiple(["a", "b"], 1, timeout=1.0)


def test_subscribe_without_connection(source, client):
    client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)

    with pytest.raises(SubscriptionError):
        source.subscribe_multiple(["a"], 0, timeout=1.0)


# ── events ────────────────────────────────────────────────────────────────────

def test_events_are_dispatched_in_order(source, client):
    recorder = Recorder(source)
    source._start_dispatcher()

    source._on_connect(client, None, {}, _code(), None)
    source._on_message(client, None, _paho_message("a", b"1"))
    source._on_disconnect(client, None, {}, _code(failure=True), None)
    source._on_connect(client, None, {}, _code(), None)
    source._on_message(client, None, _paho_message("b", b"2"))
    source._events.join()

    assert recorder.events[0] == "connected"
    assert recorder.events[1].topic == "a"
    assert recorder.events[2:4] == ["reconnecting", "connected"]
    assert recorder.events[4].payload == b"2"
    assert recorder.events[4].session == 2


def test_messages_from_previous_session_are_dropped(source, client):
    recorder = Recorder(source)
    source._start_dispatcher()

    source._on_connect(client, None, {}, _code(), None)
    source._on_connect(client, None, {}, _code(), None)
    source._events.put((ConnectionEvent.MESSAGE_RECEIVED, Message("a", b"old", session=1)))
    source._events.join()

    assert recorder.events == ["connected", "connected"]


def test_handler_exception_does_not_stop_dispatching(source, client):
    received = []

    def broken(message):
        raise RuntimeError("boom")

    source.add_handler(ConnectionEvent.MESSAGE_RECEIVED, broken)
    source.add_handler(ConnectionEvent.CONNECTED, lambda: received.append("connected"))
    source._start_dispatcher()

    source._on_connect(client, None, {}, _code(), None)
    source._on_message(client, None, _paho_message("a", b"1"))
    source._on_connect(client, None, {}, _code(), None)
    source._events.join()

    assert received == ["connected", "connected"]


def test_add_handler_requires_callable(source):
    with pytest.raises(TypeError):
        source.add_handler(ConnectionEvent.CONNECTED, "not callable")


# ── disconnect ────────────────────────────────────────────────────────────────

def test_disconnect_closes_client(source, client):
    recorder = Recorder(source)
    _accept_connection(source, client)
    source.connect(timeout=1.0)

    source.disconnect(250)
    source._on_disconnect(client, None, {}, _code(), None)

    client.disconnect.assert_called_once()
    client.loop_stop.assert_called_once()
    assert "reconnecting" not in recorder.events


# ── client setup ──────────────────────────────────────────────────────────────

def test_client_options(config):
    secure = replace(
        config,
        broker=BrokerEndpoint(host="broker", port=8883, tls=True, username="user", password="pass"),
    )

    with patch("mqtt_grafana_bridge.sources.mqttsource.mqtt.Client") as mock_cls:
        MqttSource(secure)

    mock_cls.assert_called_once_with(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id="bridge1",
        clean_session=False,
        transport="tcp",
    )
    client = mock_cls.return_value
    client.tls_set.assert_called_once()
    client.username_pw_set.assert_called_once_with("user", "pass")
    client.reconnect_delay_set.assert_called_once()


def test_websocket_client_options(config):
    websocket = replace(
        config,
        broker=BrokerEndpoint(host="broker", port=80, websockets=True, path="/mqtt"),
    )

    with patch("mqtt_grafana_bridge.sources.mqttsource.mqtt.Client") as mock_cls:
        MqttSource(websocket)

    assert mock_cls.call_args.kwargs["transport"] == "websockets"
    client = mock_cls.return_value
    client.ws_set_options.assert_called_once_with(path="/mqtt")
    client.tls_set.assert_not_called()
    client.username_pw_set.assert_not_called()


# ── logging ───────────────────────────────────────────────────────────────────

def test_refused_reconnect_is_not_logged_as_warning(source, client):
    records = []
    handler_id = logger.add(records.append, level="WARNING")
    try:
        source._connack.set()
        source._on_connect(client, None, {}, _code(failure=True, name="Server unavailable"), None)
    finally:
        logger.remove(handler_id)

    assert records == []
    assert source._connect_failure is None
