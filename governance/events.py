"""
events.py — Outbound state-change events.

Downstream consumers (dashboards, notification fan-out, the webhook
notifier) subscribe to named events. A failing subscriber is logged and
skipped; it never fails the operation that published the event.

Event names:
    expense.created, expense.submitted, expense.approved, expense.rejected,
    expense.reclassified, expense.paid,
    alert.raised, alert.updated, alert.auto_resolved, alert.resolved,
    alert.ignored
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from governance.models import utcnow

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class Event:
    name: str
    entity_id: str
    new_state: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


Subscriber = Callable[[Event], None]


class EventPublisher:
    """In-process pub/sub; subscribers register per event name or '*'."""

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(self, event_name: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(event_name, []).append(callback)

    def publish(self, event_name: str, entity_id: str, new_state: str, **payload: Any) -> Event:
        event = Event(name=event_name, entity_id=entity_id, new_state=new_state, payload=payload)
        with self._lock:
            targets = list(self._subscribers.get(event_name, ())) + list(
                self._subscribers.get(WILDCARD, ())
            )
            self.published += 1

        logger.debug("Event %s → %s (%s)", event_name, entity_id, new_state)
        for callback in targets:
            try:
                callback(event)
            except Exception as exc:
                logger.error(
                    "Subscriber %r failed on %s for %s: %s",
                    callback,
                    event_name,
                    entity_id,
                    exc,
                    exc_info=True,
                )
        return event
