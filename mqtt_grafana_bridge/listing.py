import os
import sys
import argparse
from loguru import logger

from .config import parse_grafana_url
from .core.errors import AnnotationError, ConfigError
from .core.message import Annotation
from .destinations.grafana import GrafanaDestination


def create_parser():
    parser = argparse.ArgumentParser(
        prog="grafana-annotations",
        description="Lists Grafana annotations, optionally filtered by tags.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Print verbose information"
    )
    parser.add_argument(
        "-g",
        "--grafana-url",
        metavar="URL",
        default=os.environ.get("GRAFANA_URL"),
        help="URL of the Grafana server incl. username and password [env: GRAFANA_URL]",
    )
    parser.add_argument(
        "-t",
        "--tag",
        dest="tags",
        action="append",
        default=[],
        metavar="TAG",
        help="tag to filter Grafana annotations. If specified multiple times, they are ANDed.",
    )
    return parser


def format_annotation(annotation: Annotation) -> str:
    created_at = annotation.created_at.astimezone().isoformat(timespec="seconds")
    return f"{created_at}: {annotation.text} ({','.join(annotation.tags)})"


def main(argv=None) -> int:
    args = create_parser().parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level="INFO" if args.verbose else "WARNING", colorize=True)

    try:
        if not args.grafana_url:
            raise ConfigError("the Grafana URL is required (--grafana-url or GRAFANA_URL)")
        endpoint = parse_grafana_url(args.grafana_url)
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return e.exit_code

    logger.info(f"Connecting to Grafana at {endpoint.base_url}")
    sink = GrafanaDestination(endpoint, retry_attempts=1)
    try:
        annotations = sink.list(args.tags)
    except AnnotationError as e:
        logger.critical(f"Could not list annotations: {e}")
        return e.exit_code
    finally:
        sink.stop()

    for annotation in annotations:
        print(format_annotation(annotation))
    return 0


if __name__ == "__main__":
    sys.exit(main())
