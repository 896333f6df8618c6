"""Store-side change notifications.

Writers stage row changes while a transaction is open; ``publish_staged`` hands
them to subscribers once the commit went through, and ``discard_staged`` drops
them on rollback. Subscribers never see changes that were not committed.
"""
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = ('INSERT', 'UPDATE', 'DELETE')


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    old_row: Optional[dict] = None
    new_row: Optional[dict] = None

    @property
    def row_id(self):
        row = self.new_row or self.old_row or {}
        return row.get('id')


class ChangeFeed:
    def __init__(self):
        self._subscribers = defaultdict(list)
        self._lock = threading.Lock()
        self._staged = threading.local()

    def subscribe(self, table, callback, event_types=None):
        """Register ``callback(event)`` for ``table``; returns an unsubscribe callable."""
        wanted = frozenset(event_types or EVENT_TYPES)
        entry = (wanted, callback)
        with self._lock:
            self._subscribers[table].append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._subscribers[table]:
                    self._subscribers[table].remove(entry)

        return unsubscribe

    def subscriber_count(self, table=None):
        with self._lock:
            if table is not None:
                return len(self._subscribers[table])
            return sum(len(entries) for entries in self._subscribers.values())

    def stage(self, table, event_type, old_row=None, new_row=None):
        if event_type not in EVENT_TYPES:
            raise ValueError(f'Unknown event type: {event_type}')
        pending = getattr(self._staged, 'events', None)
        if pending is None:
            pending = self._staged.events = []
        pending.append(ChangeEvent(table, event_type, old_row, new_row))

    def discard_staged(self):
        self._staged.events = []

    def publish_staged(self):
        events = getattr(self._staged, 'events', None) or []
        self._staged.events = []
        for event in events:
            self.publish(event)
        return len(events)

    def publish(self, event):
        with self._lock:
            targets = [
                callback for wanted, callback in self._subscribers[event.table]
                if event.event_type in wanted
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception('Change subscriber failed for %s %s', event.table, event.event_type)
