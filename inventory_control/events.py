import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], None]

WILDCARD = "*"


class EventBus:
    """In-process domain event sink.

    Services publish only after their transaction has committed, so handlers
    never observe rolled-back state. A failing handler is logged and skipped;
    it cannot affect other handlers or the publisher.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, [])) + list(self._handlers.get(WILDCARD, []))

        for handler in handlers:
            try:
                handler(topic, payload)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, topic)

    def publish_all(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        for topic, payload in events:
            self.publish(topic, payload)


event_bus = EventBus()
