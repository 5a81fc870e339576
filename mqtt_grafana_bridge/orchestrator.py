import threading
from loguru import logger

from .config import BridgeConfig
from .core.errors import ConnectError, SubscriptionError
from .core.message import Message
from .core.shutdown import ShutdownToken
from .core.state import ConnectionEvent, ConnectionState
from .core.translator import EventTranslator
from .destinations.interfaces import IAnnotationSink
from .lifecycle import LifecycleAnnouncer
from .sources.interfaces import IConnection
from .subscriptions import SubscriptionManager


class BridgeOrchestrator:
    """
    Owns the broker connection and its state, turns every received message
    into an annotation and runs the ordered shutdown sequence.

    Connection handlers run serially on the connection's dispatcher thread;
    `run` blocks the calling thread until the shutdown token is set.
    """

    def __init__(
        self,
        config: BridgeConfig,
        connection: IConnection,
        sink: IAnnotationSink,
        token: ShutdownToken | None = None,
    ):
        self.config = config
        self.connection = connection
        self.sink = sink
        self.token = token if token is not None else ShutdownToken()

        self.translator = EventTranslator(config.tags)
        self.subscriptions = SubscriptionManager(connection, config)
        self.announcer = LifecycleAnnouncer(sink, config)

        self.state = ConnectionState.DISCONNECTED
        self._stopping = threading.Event()
        # serializes annotation writes with the shutdown sequence
        self._annotating = threading.Lock()

        connection.add_handler(ConnectionEvent.CONNECTED, self._on_connected)
        connection.add_handler(ConnectionEvent.RECONNECTING, self._on_reconnecting)
        connection.add_handler(ConnectionEvent.MESSAGE_RECEIVED, self._handle_message)

    def run(self) -> int:
        """Runs the bridge until shutdown and returns the process exit status."""
        logger.info("Starting the Bridge...")
        self.state = ConnectionState.CONNECTING

        try:
            self.connection.connect(self.config.connect_timeout)
        except ConnectError as e:
            logger.critical(f"Could not connect to MQTT: {e}")
            self.state = ConnectionState.DISCONNECTED
            self.sink.stop()
            return e.exit_code

        logger.success("Bridge is running.")
        self.token.wait()
        return self.stop()

    def stop(self) -> int:
        logger.info(f"Shutting down the bridge ({self.token.reason})...")
        self._stopping.set()

        error = self.token.error
        with self._annotating:
            if error is None:
                self.announcer.announce_shutdown()
            else:
                logger.critical(f"{error.__class__.__name__}: {error}")

        self.connection.disconnect(self.config.disconnect_grace_ms)
        self.state = ConnectionState.DISCONNECTED
        self.sink.stop()

        if error is not None:
            return error.exit_code
        logger.success("Bridge shut down successfully.")
        return 0

    # --- Connection handlers ---

    def _on_connected(self):
        if self._stopping.is_set():
            return

        previous = self.state
        self.state = ConnectionState.CONNECTED
        if previous is ConnectionState.RECONNECTING:
            logger.info("Reconnected to MQTT. Re-establishing subscriptions.")

        try:
            self.subscriptions.subscribe_all()
        except SubscriptionError as e:
            self.token.fail(e)
            return

        with self._annotating:
            if not self._stopping.is_set():
                self.announcer.announce_startup()

    def _on_reconnecting(self):
        if self._stopping.is_set() or self.state is ConnectionState.RECONNECTING:
            return
        self.state = ConnectionState.RECONNECTING
        logger.info(f"Reconnecting to MQTT at {self.config.broker.display()}")

    def _handle_message(self, message: Message):
        with self._annotating:
            if self._stopping.is_set() or self.state is not ConnectionState.CONNECTED:
                logger.debug(f"Ignoring message on '{message.topic}' received while {self.state.value}.")
                return

            request = self.translator.translate(message)
            logger.info(f"Publishing Grafana annotation: {request.text} ({','.join(request.tags)})")

            try:
                self.sink.create(request.text, request.tags)
            except Exception as e:
                logger.error(f"could not publish annotation {message.payload!r}: {e}")
