import os
import sys
from dataclasses import dataclass
from urllib.parse import urlsplit, unquote

import yaml
from loguru import logger

from .core.errors import ConfigError

MQTT_SCHEMES = {
    "mqtt": (1883, False, False),
    "tcp": (1883, False, False),
    "mqtts": (8883, True, False),
    "ssl": (8883, True, False),
    "tls": (8883, True, False),
    "ws": (80, False, True),
    "wss": (443, True, True),
}

HTTP_SCHEMES = ("http", "https")

DEFAULTS = {
    "qos": 0,
    "keepalive": 60,
    "connect_timeout": 10.0,
    "subscribe_timeout": 10.0,
    "disconnect_grace_ms": 250,
    "http_timeout": 5.0,
    "retry_attempts": 3,
}


@dataclass(frozen=True)
class BrokerEndpoint:
    host: str
    port: int
    tls: bool = False
    websockets: bool = False
    path: str = ""
    username: str | None = None
    password: str | None = None

    def display(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class GrafanaEndpoint:
    base_url: str
    username: str | None = None
    password: str | None = None

    @property
    def auth(self) -> tuple[str, str] | None:
        if self.username is None:
            return None
        return self.username, self.password or ""


@dataclass(frozen=True)
class BridgeConfig:
    """Validated settings of a bridge process, handed to every component."""

    broker: BrokerEndpoint
    grafana: GrafanaEndpoint
    client_id: str
    topics: tuple[str, ...]
    tags: tuple[str, ...] = ()
    verbose: bool = False
    log_level: str = "WARNING"

    qos: int = DEFAULTS["qos"]
    keepalive: int = DEFAULTS["keepalive"]
    connect_timeout: float = DEFAULTS["connect_timeout"]
    subscribe_timeout: float = DEFAULTS["subscribe_timeout"]
    disconnect_grace_ms: int = DEFAULTS["disconnect_grace_ms"]
    http_timeout: float = DEFAULTS["http_timeout"]
    retry_attempts: int = DEFAULTS["retry_attempts"]


def get_program_name() -> str:
    """Base name of the running executable, used as the default client id."""
    path = sys.argv[0] if sys.argv and sys.argv[0] else ""
    name = os.path.basename(path)
    if name == "__main__.py":
        # python -m mqtt_grafana_bridge
        name = os.path.basename(os.path.dirname(os.path.abspath(path)))
    if not name or name in ("-c", "-m"):
        logger.warning("Could not determine program name; using 'unknown'.")
        return "unknown"
    return name[:-3] if name.endswith(".py") else name


def load_yaml_file(path: str) -> dict:
    config_path = os.path.join(os.getcwd(), path)

    try:
        with open(config_path, "r") as f:
            document = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found in '{config_path}'")
    except yaml.YAMLError as e:
        raise ConfigError(f"Syntax error in YAML file '{config_path}': {e}")

    if not isinstance(document, dict):
        raise ConfigError(f"Config file '{config_path}' must contain a mapping.")
    logger.debug(f"Config loaded from '{config_path}'.")
    return document


def parse_broker_url(url: str) -> BrokerEndpoint:
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Invalid MQTT URL '{url}': {e}")

    scheme = parts.scheme.lower()
    if scheme not in MQTT_SCHEMES:
        raise ConfigError(
            f"Invalid MQTT URL '{url}': scheme must be one of {', '.join(MQTT_SCHEMES)}"
        )
    if not parts.hostname:
        raise ConfigError(f"Invalid MQTT URL '{url}': missing host")

    default_port, tls, websockets = MQTT_SCHEMES[scheme]
    return BrokerEndpoint(
        host=parts.hostname,
        port=port or default_port,
        tls=tls,
        websockets=websockets,
        path=parts.path if websockets else "",
        username=unquote(parts.username) if parts.username is not None else None,
        password=unquote(parts.password) if parts.password is not None else None,
    )


def parse_grafana_url(url: str) -> GrafanaEndpoint:
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Invalid Grafana URL '{url}': {e}")

    if parts.scheme.lower() not in HTTP_SCHEMES:
        raise ConfigError(f"Invalid Grafana URL '{url}': scheme must be http or https")
    if not parts.hostname:
        raise ConfigError(f"Invalid Grafana URL '{url}': missing host")

    netloc = parts.hostname if port is None else f"{parts.hostname}:{port}"
    # Grafana may be served below a sub path, e.g. https://example.org/grafana
    base_url = f"{parts.scheme.lower()}://{netloc}{parts.path.rstrip('/')}"
    return GrafanaEndpoint(
        base_url=base_url,
        username=unquote(parts.username) if parts.username is not None else None,
        password=unquote(parts.password) if parts.password is not None else None,
    )


def _pick(*values):
    """Returns the first value that is set, following cli > env > file precedence."""
    for value in values:
        if value is not None and value != [] and value != "":
            return value
    return None


def _number(section: dict, key: str, cast, default):
    value = section.get(key, default)
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got '{value}'")
    if number < 0:
        raise ConfigError(f"'{key}' must not be negative, got '{value}'")
    return number


def _string_list(value, name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"'{name}' must be a list of strings")
    return list(value)


def _unique(items: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


def load_bridge_config(args, environ=None) -> BridgeConfig:
    """
    Builds the bridge configuration from parsed command line arguments,
    the environment and an optional YAML file.

    Raises:
        ConfigError: if a required value is missing or malformed.
    """
    environ = os.environ if environ is None else environ
    document = load_yaml_file(args.config) if getattr(args, "config", None) else {}

    mqtt_section = document.get("mqtt") or {}
    grafana_section = document.get("grafana") or {}
    logging_section = document.get("logging") or {}
    for name, section in (("mqtt", mqtt_section), ("grafana", grafana_section), ("logging", logging_section)):
        if not isinstance(section, dict):
            raise ConfigError(f"Config section '{name}' must be a mapping.")

    mqtt_url = _pick(args.mqtt_url, environ.get("MQTT_URL"), mqtt_section.get("url"))
    if not mqtt_url:
        raise ConfigError("the MQTT broker URL is required (--mqtt-url or MQTT_URL)")

    grafana_url = _pick(args.grafana_url, environ.get("GRAFANA_URL"), grafana_section.get("url"))
    if not grafana_url:
        raise ConfigError("the Grafana URL is required (--grafana-url or GRAFANA_URL)")

    topics = _unique(_pick(args.topics, _string_list(mqtt_section.get("topics"), "mqtt.topics")) or [])
    if not topics:
        raise ConfigError("at least one MQTT topic is required (--topic)")
    if any(not topic for topic in topics):
        raise ConfigError("MQTT topics must not be empty")

    tags = _pick(args.tags, _string_list(grafana_section.get("tags"), "grafana.tags")) or []

    qos = _number(mqtt_section, "qos", int, DEFAULTS["qos"])
    if qos > 2:
        raise ConfigError(f"'qos' must be 0, 1 or 2, got '{qos}'")

    verbose = bool(args.verbose)
    log_level = str(logging_section.get("level", "INFO" if verbose else "WARNING")).upper()
    if log_level not in ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"Unknown logging level '{log_level}'")

    client_id = _pick(args.client_id, mqtt_section.get("client_id")) or get_program_name()

    return BridgeConfig(
        broker=parse_broker_url(mqtt_url),
        grafana=parse_grafana_url(grafana_url),
        client_id=client_id,
        topics=topics,
        tags=tuple(tags),
        verbose=verbose,
        log_level=log_level,
        qos=qos,
        keepalive=_number(mqtt_section, "keepalive", int, DEFAULTS["keepalive"]),
        connect_timeout=_number(mqtt_section, "connect_timeout", float, DEFAULTS["connect_timeout"]),
        subscribe_timeout=_number(mqtt_section, "subscribe_timeout", float, DEFAULTS["subscribe_timeout"]),
        disconnect_grace_ms=_number(mqtt_section, "disconnect_grace_ms", int, DEFAULTS["disconnect_grace_ms"]),
        http_timeout=_number(grafana_section, "timeout", float, DEFAULTS["http_timeout"]),
        retry_attempts=max(1, _number(grafana_section, "retry_attempts", int, DEFAULTS["retry_attempts"])),
    )
