from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from minicrm.context import get_correlation_id
from minicrm.core.events import event_bus

# Every envelope published by this process, in order. Tests clear it between runs.
published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> dict[str, Any]:
    """Stamp a domain event envelope and fan it out on the in-process bus."""
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("event envelope requires a non-empty event_type")

    envelope.setdefault("correlation_id", get_correlation_id())
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
