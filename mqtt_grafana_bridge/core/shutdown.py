import signal
import threading
from loguru import logger

from .errors import BridgeError


class ShutdownToken:
    """
    One-shot cancellation token awaited by the main control flow.

    It is satisfied either by a termination request (`trigger`) or by a fatal
    error raised on a worker thread (`fail`). Only the first call counts.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._error: BridgeError | None = None

    def trigger(self, reason: str = "shutdown requested") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        return True

    def fail(self, error: BridgeError) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = str(error)
            self._error = error
            self._event.set()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def error(self) -> BridgeError | None:
        return self._error


class SignalAdapter:
    """Turns SIGINT/SIGTERM into a trigger of a ShutdownToken."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, token: ShutdownToken):
        self.token = token
        self._previous: dict[int, object] = {}

    def install(self) -> None:
        for signum in self.SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum, frame):
        name = signal.Signals(signum).name
        if self.token.trigger(f"received {name}"):
            logger.info(f"{name} received. Shutting down...")
        else:
            logger.debug(f"{name} received while already shutting down. Ignoring.")

    def __enter__(self):
        self.install()
        return self.token

    def __exit__(self, exc_type, exc, tb):
        self.restore()
