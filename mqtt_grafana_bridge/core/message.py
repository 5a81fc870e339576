from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class Message:
    """
    Represents a standardized, immutable message received from the broker.
    The session counter identifies the broker connection it arrived on.
    """

    topic: str
    payload: bytes

    session: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AnnotationRequest:
    """Text and tags of an annotation about to be created."""

    text: str
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Annotation:
    """An annotation as stored by Grafana. `time` is in epoch milliseconds."""

    id: int
    time: int
    text: str
    tags: tuple[str, ...] = ()

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.time / 1000, tz=timezone.utc)
