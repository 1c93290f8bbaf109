"""Dead Letter Queue — change events whose handlers failed after max retries.

Entries are kept per tenant so an operator can replay one tenant's
invalidations after an outage. The queue is bounded; when full the oldest
entry is dropped and its cache keys age out by TTL.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from lexcore.events.envelope import CloudEvent

logger = logging.getLogger(__name__)


@dataclass
class DLQEntry:
    event: CloudEvent
    error: str
    retry_count: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tenant_id(self) -> str:
        return self.event.tenant_id


class DeadLetterQueue:
    def __init__(self, max_entries: int = 10_000) -> None:
        self._entries: deque[DLQEntry] = deque()
        self._max_entries = max_entries

    @property
    def entries(self) -> list[DLQEntry]:
        return list(self._entries)

    def add(self, event: CloudEvent, error: str, retry_count: int) -> None:
        if len(self._entries) >= self._max_entries:
            dropped = self._entries.popleft()
            logger.error(
                "DLQ full (%d), dropping event %s for tenant %s",
                self._max_entries, dropped.event.id, dropped.tenant_id,
            )
        self._entries.append(DLQEntry(event=event, error=error, retry_count=retry_count))

    def for_tenant(self, tenant_id: str) -> list[DLQEntry]:
        return [e for e in self._entries if e.tenant_id == tenant_id]

    def replay(self, event_id: str) -> CloudEvent | None:
        """Remove and return one event for re-delivery."""
        for entry in self._entries:
            if entry.event.id == event_id:
                self._entries.remove(entry)
                return entry.event
        return None

    def drain(self, tenant_id: str | None = None) -> list[CloudEvent]:
        if tenant_id is None:
            taken, kept = list(self._entries), []
        else:
            taken = [e for e in self._entries if e.tenant_id == tenant_id]
            kept = [e for e in self._entries if e.tenant_id != tenant_id]
        self._entries = deque(kept)
        return [entry.event for entry in taken]

    @property
    def depth(self) -> int:
        return len(self._entries)
