from enum import Enum


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionEvent(Enum):
    """Events emitted by a broker connection to its registered handlers."""

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    MESSAGE_RECEIVED = "message_received"
