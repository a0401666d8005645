"""
In-memory usage store.

Same semantics as the SQLite repository, kept in a process-local list.
Useful as a test fake and for single-process deployments that do not
need the ledger to survive a restart.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .models import UsageEvent, WindowUsage
from .repository import to_utc


class InMemoryUsageStore:
    """List-backed append-only usage ledger."""

    def __init__(self, events: Optional[List[UsageEvent]] = None):
        self._events: List[UsageEvent] = list(events or [])
        self._lock = threading.Lock()

    def append(self, event: UsageEvent) -> UsageEvent:
        with self._lock:
            self._events.append(event)
        return event

    def window_usage(
        self,
        subject: str,
        operation: str,
        since: datetime,
        offset: int = 0
    ) -> WindowUsage:
        if offset < 0:
            raise ValueError("offset must be >= 0")
        since = to_utc(since)
        with self._lock:
            matching = sorted(
                to_utc(event.occurred_at)
                for event in self._events
                if event.subject == subject
                and event.operation == operation
                and to_utc(event.occurred_at) >= since
            )
        oldest = matching[offset] if offset < len(matching) else None
        return WindowUsage(count=len(matching), oldest=oldest)

    def get_recent_events(
        self,
        subject: Optional[str] = None,
        operation: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 1000
    ) -> List[UsageEvent]:
        """Events newest first, filtered like UsageRepository.get_recent_events."""
        with self._lock:
            events = list(self._events)
        if subject:
            events = [e for e in events if e.subject == subject]
        if operation:
            events = [e for e in events if e.operation == operation]
        if days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)
            events = [e for e in events if to_utc(e.occurred_at) >= cutoff]
        events.sort(key=lambda e: to_utc(e.occurred_at), reverse=True)
        return events[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
