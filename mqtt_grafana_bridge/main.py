import sys
import argparse
from loguru import logger

from .config import BridgeConfig, load_bridge_config
from .core.errors import ConfigError
from .core.shutdown import ShutdownToken, SignalAdapter
from .destinations.grafana import GrafanaDestination
from .orchestrator import BridgeOrchestrator
from .sources.mqttsource import MqttSource


def create_parser():
    parser = argparse.ArgumentParser(
        prog="mqtt-grafana-event-publisher",
        description="Publishes every message received on the given MQTT topics as a Grafana annotation.",
    )

    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Print verbose information"
    )
    parser.add_argument(
        "-c", "--client-id", help="client id to use for the MQTT connection"
    )
    parser.add_argument(
        "-m",
        "--mqtt-url",
        metavar="URL",
        help="URL of the MQTT broker incl. username and password [env: MQTT_URL]",
    )
    parser.add_argument(
        "-g",
        "--grafana-url",
        metavar="URL",
        help="URL of the Grafana server incl. username and password [env: GRAFANA_URL]",
    )
    parser.add_argument(
        "-t",
        "--topic",
        dest="topics",
        action="append",
        metavar="TOPIC",
        help="MQTT topic to subscribe to and publish to Grafana (repeat for multiple topics)",
    )
    parser.add_argument(
        "--tag",
        dest="tags",
        action="append",
        metavar="TAG",
        help="tag to add to the Grafana annotation (repeat for multiple tags)",
    )
    parser.add_argument(
        "--config",
        type=str,
        metavar="FILE",
        help="optional YAML config file; command line and environment take precedence",
    )

    return parser


def setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, colorize=True)
    logger.debug(f"Logger level set to: {level}")


def build_bridge(config: BridgeConfig, token: ShutdownToken) -> BridgeOrchestrator:
    logger.info(f"Connecting to Grafana at {config.grafana.base_url}")
    sink = GrafanaDestination(
        config.grafana, timeout=config.http_timeout, retry_attempts=config.retry_attempts
    )
    connection = MqttSource(config)
    return BridgeOrchestrator(config, connection, sink, token)


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging("INFO" if args.verbose else "WARNING")

    try:
        config = load_bridge_config(args)
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return e.exit_code

    setup_logging(config.log_level)

    token = ShutdownToken()
    bridge = build_bridge(config, token)

    with SignalAdapter(token):
        return bridge.run()


if __name__ == "__main__":
    sys.exit(main())
