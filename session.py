"""Session records and the in-memory session registry.

One SessionRecord per active tenant. The registry is the single source of
truth for "is this tenant active"; all of its operations are synchronous,
so they never interleave under the event loop.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from rooms import ChatEvent, RoomHandle

log = logging.getLogger(__name__)

HISTORY_CAPACITY = 100


class HistoryBuffer:
    """Bounded log of recent chat events with an owned dedup record.

    Oldest entries are evicted first. Inbound events go through dedup;
    the agent's own replies are recorded for context only.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self.capacity = capacity
        self._events: collections.deque[ChatEvent] = collections.deque(maxlen=capacity)
        self._seen_ids: collections.deque[str] = collections.deque(maxlen=capacity)
        self._last_inbound: tuple[str, str] | None = None

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ChatEvent]:
        return iter(list(self._events))

    def is_duplicate(self, event: ChatEvent) -> bool:
        if event.message_id and event.message_id in self._seen_ids:
            return True
        return self._last_inbound == (event.author, event.text)

    def append(self, event: ChatEvent) -> bool:
        """Append an inbound event. Returns False if it was a duplicate."""
        if self.is_duplicate(event):
            return False
        self._events.append(event)
        self._last_inbound = (event.author, event.text)
        if event.message_id:
            self._seen_ids.append(event.message_id)
        return True

    def record_outbound(self, author: str, text: str) -> ChatEvent:
        event = ChatEvent(author=author, text=text, outbound=True)
        self._events.append(event)
        return event

    def recent(self, n: int, exclude: ChatEvent | None = None) -> list[ChatEvent]:
        """Last n entries, oldest first, optionally skipping one event."""
        if n <= 0:
            return []
        events = [e for e in self._events if e is not exclude]
        return events[-n:]


@dataclass
class SessionRecord:
    tenant_id: str
    room_key: str
    handle: RoomHandle
    encrypted_secret: str
    room_url: str = ""
    history: HistoryBuffer = field(default_factory=HistoryBuffer)
    created_at: float = field(default_factory=time.time)
    poll_task: asyncio.Task | None = None
    playback: Any = None
    closing: bool = False
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        # created_at is fixed at construction
        object.__setattr__(self, "_created_at_frozen", self.created_at)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "created_at" and hasattr(self, "_created_at_frozen"):
            raise AttributeError("created_at is immutable")
        super().__setattr__(name, value)

    def summary(self) -> dict:
        """Observability snapshot. Never includes the secret."""
        return {
            "tenantId": self.tenant_id,
            "roomKey": self.room_key,
            "createdAt": datetime.fromtimestamp(self.created_at, tz=timezone.utc)
                                 .isoformat().replace("+00:00", "Z"),
            "historyLength": len(self.history),
        }


class SessionRegistry:
    """Tenant id → SessionRecord. Injected, never a module-level singleton."""

    def __init__(self):
        self._records: dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._records

    def get(self, tenant_id: str) -> SessionRecord | None:
        return self._records.get(tenant_id)

    def add(self, record: SessionRecord) -> None:
        if record.tenant_id in self._records:
            raise KeyError(f"Session already registered for tenant {record.tenant_id!r}")
        self._records[record.tenant_id] = record
        log.debug("Registered session for %s (room %s)", record.tenant_id, record.room_key)

    def remove(self, tenant_id: str, record: SessionRecord | None = None) -> SessionRecord | None:
        """Remove and return the tenant's record.

        If ``record`` is given, only remove when it is still the registered
        one, so a stale teardown never removes a newer session.
        """
        current = self._records.get(tenant_id)
        if current is None or (record is not None and current is not record):
            return None
        del self._records[tenant_id]
        log.debug("Unregistered session for %s", tenant_id)
        return current

    def is_live(self, record: SessionRecord) -> bool:
        return self._records.get(record.tenant_id) is record

    def snapshot(self) -> list[SessionRecord]:
        return list(self._records.values())

    def summaries(self) -> list[dict]:
        return [r.summary() for r in self._records.values()]
