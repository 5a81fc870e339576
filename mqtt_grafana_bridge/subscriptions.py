from loguru import logger

from .config import BridgeConfig
from .core.errors import SubscriptionError
from .sources.interfaces import IConnection


class SubscriptionManager:
    """
    Owns the configured topic set. Subscriptions are connection-scoped, so
    `subscribe_all` has to run again after every (re)connect.
    """

    def __init__(self, connection: IConnection, config: BridgeConfig):
        self.connection = connection
        self.topics = tuple(dict.fromkeys(config.topics))
        self.qos = config.qos
        self.timeout = config.subscribe_timeout

    def subscribe_all(self) -> None:
        """
        Raises:
            SubscriptionError: if any topic could not be subscribed.
        """
        logger.info(f"Subscribing to {','.join(self.topics)}")
        try:
            self.connection.subscribe_multiple(self.topics, self.qos, self.timeout)
        except SubscriptionError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Could not subscribe: {e}") from e
        logger.success(f"Subscribed to {len(self.topics)} topic(s).")
