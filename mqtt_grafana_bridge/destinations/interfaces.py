from abc import ABC, abstractmethod
from typing import Iterable

from ..core.message import Annotation


class IAnnotationSink(ABC):
    """Defines a contract for any annotation store (Grafana...)."""

    @abstractmethod
    def create(self, text: str, tags: Iterable[str]) -> int:
        """
        Creates an annotation and returns its id.

        Raises:
            AnnotationError: if the annotation could not be created.
        """
        raise NotImplementedError

    @abstractmethod
    def list(self, tags: Iterable[str]) -> list[Annotation]:
        """Returns the annotations carrying all of the given tags."""
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        """Stops the component and cleans up resources."""
        raise NotImplementedError
