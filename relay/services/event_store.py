# relay/services/event_store.py
"""
Event store contract used by the admission workflow.

The relay's real storage engine lives outside this service; the admission
core only needs save/query/delete. InMemoryEventStore is a thread-safe
stand-in used for development and tests.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from relay.models.event import Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventFilter:
    """Subset of a NIP-01 filter: every set field must match."""
    ids: Optional[List[str]] = None
    kinds: Optional[List[int]] = None
    authors: Optional[List[str]] = None
    # Single-letter tag name -> accepted values, e.g. {"e": [auction_id]}
    tags: Dict[str, List[str]] = field(default_factory=dict)
    limit: Optional[int] = None

    def matches(self, event: Event) -> bool:
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        for name, values in self.tags.items():
            if not set(event.tag_values(name)) & set(values):
                return False
        return True


class EventStore(Protocol):
    def save(self, event: Event) -> None:
        ...

    def query(self, event_filter: EventFilter) -> List[Event]:
        ...

    def delete(self, event_id: str) -> bool:
        ...


class InMemoryEventStore:
    """
    Process-local event store.

    Query results are ordered newest first, like relay subscriptions.
    """

    def __init__(self):
        self._events: Dict[str, Event] = {}
        self._lock = threading.Lock()

    def save(self, event: Event) -> None:
        with self._lock:
            if event.id in self._events:
                logger.debug(f"Event {event.id} already stored, skipping")
                return
            self._events[event.id] = event
        logger.info(f"Stored event {event.id} (kind {event.kind})")

    def query(self, event_filter: EventFilter) -> List[Event]:
        with self._lock:
            candidates = list(self._events.values())

        matched = [event for event in candidates if event_filter.matches(event)]
        matched.sort(key=lambda event: event.created_at, reverse=True)

        if event_filter.limit is not None:
            matched = matched[:event_filter.limit]
        return matched

    def delete(self, event_id: str) -> bool:
        with self._lock:
            removed = self._events.pop(event_id, None)
        if removed is not None:
            logger.info(f"Deleted event {event_id}")
        return removed is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
