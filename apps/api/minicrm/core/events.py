import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("minicrm.events")


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out to subscribers in this process.

    A name ending in ``.*`` subscribes to every event under that prefix. A
    failing subscriber is logged and skipped; publish itself never raises.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            if handler not in self._subscribers[event_name]:
                self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def _handlers_for(self, event_name: str) -> list[EventHandler]:
        with self._lock:
            matched = list(self._subscribers.get(event_name, []))
            for pattern, handlers in self._subscribers.items():
                if pattern.endswith(".*") and event_name.startswith(pattern[:-1]):
                    matched.extend(handler for handler in handlers if handler not in matched)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in self._handlers_for(event_name):
            try:
                handler(event)
            except Exception:
                logger.exception("event.handler_failed", extra={"event_name": event_name})
                continue
            delivered += 1
        return delivered


event_bus = InProcessEventBus()
