from typing import Iterable

from .message import AnnotationRequest, Message


class EventTranslator:
    """Turns a broker message into the annotation that records it."""

    def __init__(self, tags: Iterable[str]):
        self.tags = tuple(tags)

    def translate(self, message: Message) -> AnnotationRequest:
        # payloads are forwarded as-is; undecodable bytes must never stop the bridge
        payload = bytes(message.payload).decode("utf-8", errors="replace")
        return AnnotationRequest(text=f"{message.topic}: {payload}", tags=self.tags)
