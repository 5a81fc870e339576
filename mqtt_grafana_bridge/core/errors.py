class BridgeError(Exception):
    """Base class for the errors raised by the bridge."""

    exit_code = 1


class ConfigError(BridgeError):
    """The configuration is missing a required value or could not be parsed."""

    exit_code = 2


class ConnectError(BridgeError):
    """The initial connection to the broker could not be established."""


class SubscriptionError(BridgeError):
    """The broker did not confirm a subscription request in time, or rejected it."""


class AnnotationError(BridgeError):
    """The annotation service could not create or list annotations."""
