from abc import ABC, abstractmethod
from typing import Callable, Iterable

from ..core.message import Message
from ..core.state import ConnectionEvent

MessageHandler = Callable[[Message], None]
EventHandler = Callable[..., None]


class IConnection(ABC):
    """
    Defines the contract for a broker connection (e.g., MQTT) the bridge
    receives messages from. Connection state changes and messages are
    reported as events to the registered handlers, serially and in order.
    """

    def __init__(self):
        self._handlers: dict[ConnectionEvent, list[EventHandler]] = {
            event: [] for event in ConnectionEvent
        }

    def add_handler(self, event: ConnectionEvent, handler: EventHandler) -> None:
        if not callable(handler):
            raise TypeError("handler must be a callable function.")
        self._handlers[event].append(handler)

    def _emit(self, event: ConnectionEvent, *args) -> None:
        for handler in self._handlers[event]:
            handler(*args)

    @abstractmethod
    def connect(self, timeout: float) -> None:
        """
        Connects to the broker and blocks until the connection is acknowledged.

        Raises:
            ConnectError: if the broker can't be reached or refuses the connection.
        """
        raise NotImplementedError

    @abstractmethod
    def subscribe_multiple(self, topics: Iterable[str], qos: int, timeout: float) -> None:
        """
        Subscribes to all topics with a single request and waits for the confirmation.

        Raises:
            SubscriptionError: if the request is not confirmed within `timeout`
                               or any topic is rejected.
        """
        raise NotImplementedError

    @abstractmethod
    def disconnect(self, grace_ms: int) -> None:
        """Waits up to `grace_ms` for in-flight work, then closes the connection."""
        raise NotImplementedError
