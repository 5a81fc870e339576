from typing import Iterable

import requests
from loguru import logger
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mqtt_grafana_bridge.config import GrafanaEndpoint
from mqtt_grafana_bridge.core.errors import AnnotationError
from mqtt_grafana_bridge.core.message import Annotation
from mqtt_grafana_bridge.destinations.interfaces import IAnnotationSink


class _TransientError(Exception):
    """A failure worth retrying: transport error or 5xx answer."""


class GrafanaDestination(IAnnotationSink):
    """
    Defines the Grafana server the annotations are written to, through its
    HTTP API (`/api/annotations`) with basic authentication.
    """

    def __init__(self, endpoint: GrafanaEndpoint, timeout: float = 5.0, retry_attempts: int = 3):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = endpoint.auth
        self.session.headers.update({"Accept": "application/json"})

        self.retrier = Retrying(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
            retry=retry_if_exception_type(_TransientError),
        )

    @property
    def annotations_url(self) -> str:
        return f"{self.endpoint.base_url}/api/annotations"

    def _request(self, method: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(
                method, self.annotations_url, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            logger.info(
                f"Grafana request to {self.endpoint.base_url} failed. "
                f"Error: {e.__class__.__name__}. Retrying..."
            )
            raise _TransientError(str(e)) from e

        if response.status_code >= 500:
            logger.info(
                f"Grafana answered {response.status_code} for {method} {self.annotations_url}. Retrying..."
            )
            raise _TransientError(f"HTTP {response.status_code}: {response.text.strip()}")
        return response

    def _call(self, method: str, **kwargs) -> requests.Response:
        try:
            response = self.retrier(self._request, method, **kwargs)
        except RetryError as e:
            raise AnnotationError(
                f"Max retries exceeded for {method} {self.annotations_url}. "
                f"Final error: {e.last_attempt.exception()}"
            ) from e

        if not response.ok:
            raise AnnotationError(
                f"Grafana rejected {method} {self.annotations_url}: "
                f"HTTP {response.status_code}: {response.text.strip()}"
            )
        return response

    def create(self, text: str, tags: Iterable[str]) -> int:
        tags = list(tags)
        logger.debug(f"Creating Grafana annotation: {text} ({','.join(tags)})")
        response = self._call("POST", json={"text": text, "tags": tags})

        try:
            annotation_id = response.json()["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise AnnotationError(f"Unexpected answer from Grafana: {response.text.strip()}") from e
        return annotation_id

    def list(self, tags: Iterable[str]) -> list[Annotation]:
        params = [("tags", tag) for tag in tags]
        response = self._call("GET", params=params)

        try:
            return [
                Annotation(
                    id=item.get("id", 0),
                    time=item.get("time", 0),
                    text=item.get("text", ""),
                    tags=tuple(item.get("tags") or ()),
                )
                for item in response.json()
            ]
        except (ValueError, AttributeError, TypeError) as e:
            raise AnnotationError(f"Unexpected answer from Grafana: {response.text.strip()}") from e

    def stop(self):
        try:
            self.session.close()
            logger.debug("Grafana: HTTP session closed.")
        except Exception as e:
            logger.warning(f"Exception during Grafana session closing: {e}")
