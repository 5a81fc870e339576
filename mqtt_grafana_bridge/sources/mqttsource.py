import queue
import socket
import threading
import time
from typing import Iterable

import paho.mqtt.client as mqtt
from loguru import logger

from .interfaces import IConnection
from ..config import BridgeConfig
from ..core.errors import ConnectError, SubscriptionError
from ..core.message import Message
from ..core.state import ConnectionEvent

_STOP = object()


class MqttSource(IConnection):
    """
    Broker connection backed by paho-mqtt.

    paho's network thread only enqueues events. A single dispatcher thread
    hands them to the registered handlers in arrival order, so handlers can
    block (HTTP calls, waiting for a SUBACK) without stalling the network loop.
    """

    def __init__(self, config: BridgeConfig, client: mqtt.Client | None = None):
        super().__init__()
        self.config = config
        self.endpoint = config.broker
        self.client = client if client is not None else self._create_client()
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.on_subscribe = self._on_subscribe
        self.client.on_log = self._on_log

        self._events: queue.Queue = queue.Queue()
        self._dispatcher: threading.Thread | None = None

        self._connack = threading.Event()
        self._connect_failure: mqtt.ReasonCode | None = None
        self._closing = threading.Event()

        # incremented by the network thread on every accepted CONNACK
        self._session = 0
        # last session announced to the handlers, owned by the dispatcher
        self._active_session = 0

        self._suback = threading.Condition()
        self._granted: dict[int, list] = {}

    def _create_client(self) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            clean_session=False,
            transport="websockets" if self.endpoint.websockets else "tcp",
        )
        if self.endpoint.websockets and self.endpoint.path:
            client.ws_set_options(path=self.endpoint.path)
        if self.endpoint.tls:
            client.tls_set()
        if self.endpoint.username is not None:
            client.username_pw_set(self.endpoint.username, self.endpoint.password)
        client.reconnect_delay_set(min_delay=1, max_delay=120)
        client.connect_timeout = self.config.connect_timeout
        return client

    # --- Lifecycle ---

    def connect(self, timeout: float) -> None:
        self._closing.clear()
        self._start_dispatcher()

        try:
            logger.info(f"Attempting to connect to MQTT broker at {self.endpoint.display()}...")
            self.client.connect(self.endpoint.host, self.endpoint.port, self.config.keepalive)
        except (socket.gaierror, ConnectionRefusedError, TimeoutError, OSError) as e:
            self._abort()
            raise ConnectError(
                f"Could not reach MQTT broker at {self.endpoint.display()}: {e}"
            ) from e

        self.client.loop_start()

        if not self._connack.wait(timeout):
            self._abort()
            raise ConnectError(
                f"MQTT broker at {self.endpoint.display()} did not acknowledge "
                f"the connection within {timeout}s"
            )

        if self._connect_failure is not None:
            reason = self._connect_failure
            self._abort()
            raise ConnectError(
                f"MQTT broker at {self.endpoint.display()} refused the connection: {reason}"
            )

    def subscribe_multiple(self, topics: Iterable[str], qos: int, timeout: float) -> None:
        topics = list(topics)
        result, mid = self.client.subscribe([(topic, qos) for topic in topics])
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise SubscriptionError(
                f"Could not subscribe to {', '.join(topics)}: {mqtt.error_string(result)}"
            )

        with self._suback:
            if not self._suback.wait_for(lambda: mid in self._granted, timeout):
                raise SubscriptionError(
                    f"Subscription to {', '.join(topics)} was not confirmed within {timeout}s"
                )
            reason_codes = self._granted.pop(mid)

        rejected = [
            topic for topic, code in zip(topics, reason_codes) if code.is_failure
        ]
        if rejected:
            raise SubscriptionError(f"Broker rejected subscription to {', '.join(rejected)}")

    def disconnect(self, grace_ms: int) -> None:
        logger.info("MQTT: Disconnecting from broker...")
        self._closing.set()

        deadline = time.monotonic() + grace_ms / 1000
        while self._events.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)

        try:
            self.client.disconnect()
            self.client.loop_stop()
        except Exception as e:
            logger.warning(f"MQTT: Exception during disconnection: {e}")

        self._stop_dispatcher(grace_ms / 1000)
        logger.info("MQTT: Stopped.")

    def _abort(self):
        self._closing.set()
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:
            logger.debug(f"MQTT: Exception while aborting connection: {e}")
        self._stop_dispatcher(1.0)

    # --- Dispatching ---

    def _start_dispatcher(self):
        if self._dispatcher is not None and self._dispatcher.is_alive():
            return
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="mqtt-dispatcher", daemon=True
        )
        self._dispatcher.start()

    def _stop_dispatcher(self, timeout: float):
        if self._dispatcher is None:
            return
        self._events.put((_STOP, None))
        if self._dispatcher is not threading.current_thread():
            self._dispatcher.join(timeout=timeout)
            if self._dispatcher.is_alive():
                logger.warning("MQTT: Dispatcher thread did not terminate gracefully.")
        self._dispatcher = None

    def _dispatch_loop(self):
        while True:
            event, arg = self._events.get()
            try:
                if event is _STOP:
                    return
                if event is ConnectionEvent.CONNECTED:
                    self._active_session = arg
                    self._emit(event)
                elif event is ConnectionEvent.MESSAGE_RECEIVED:
                    if arg.session < self._active_session:
                        logger.debug(
                            f"Dropping message on '{arg.topic}' from a previous session."
                        )
                        continue
                    self._emit(event, arg)
                else:
                    self._emit(event)
            except Exception:
                logger.exception(f"Unhandled exception in handler for '{event.value}' event.")
            finally:
                self._events.task_done()

    # --- paho callbacks, called on the network thread ---

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.info(
                f"MQTT connection failed with code: {reason_code}. The client will try again automatically."
            )
            if not self._connack.is_set():
                self._connect_failure = reason_code
                self._connack.set()
            return

        self._session += 1
        logger.success(f"Connected to MQTT broker: {self.endpoint.display()}")
        self._connack.set()
        self._events.put((ConnectionEvent.CONNECTED, self._session))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        if self._closing.is_set():
            logger.info("MQTT client disconnected successfully.")
            return
        logger.info(
            f"Unexpected MQTT disconnection ({reason_code}). Reconnecting to {self.endpoint.display()}..."
        )
        self._events.put((ConnectionEvent.RECONNECTING, None))

    def _on_message(self, client, userdata, msg):
        message = Message(topic=msg.topic, payload=msg.payload, session=self._session)
        self._events.put((ConnectionEvent.MESSAGE_RECEIVED, message))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._suback:
            self._granted[mid] = list(reason_code_list)
            self._suback.notify_all()

    def _on_log(self, client, userdata, level, buf):
        if level == mqtt.MQTT_LOG_ERR:
            logger.error(f"paho: {buf}")
        elif level == mqtt.MQTT_LOG_WARNING:
            if self.config.verbose:
                logger.warning(f"paho: {buf}")
        else:
            logger.trace(f"paho: {buf}")
