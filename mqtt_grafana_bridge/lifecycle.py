from loguru import logger

from .config import BridgeConfig
from .destinations.interfaces import IAnnotationSink


class LifecycleAnnouncer:
    """Marks process startup and shutdown with an annotation each."""

    def __init__(self, sink: IAnnotationSink, config: BridgeConfig):
        self.sink = sink
        self.client_id = config.client_id
        self.tags = tuple(config.tags)
        self._started = False
        self._stopped = False

    def announce_startup(self) -> bool:
        """Creates the startup annotation once per process. Returns True if it was created now."""
        if self._started:
            return False
        self._started = True
        return self._announce(f"{self.client_id} starting up", "startup")

    def announce_shutdown(self) -> bool:
        if self._stopped:
            return False
        self._stopped = True
        return self._announce(f"{self.client_id} shutting down", "shutdown")

    def _announce(self, text: str, kind: str) -> bool:
        try:
            self.sink.create(text, self.tags)
            logger.info(f"Published {kind} annotation: {text}")
            return True
        except Exception as e:
            logger.error(f"could not publish {kind} annotation: {e}")
            return False
