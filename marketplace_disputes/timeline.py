"""Append-only message log attached to each dispute.

Entries are never edited or removed.  Callers can only append and list in
creation order; sequence numbers are assigned on append so the order is
stable even when two entries share a timestamp.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from marketplace_disputes.schemas import TimelineEntry

logger = logging.getLogger(__name__)


class TimelineLog:
    def __init__(self) -> None:
        self._entries: dict[str, list[TimelineEntry]] = {}
        self._lock = threading.Lock()

    def append(self, entry: TimelineEntry) -> TimelineEntry:
        return self.append_many([entry])[0]

    def append_many(self, entries: Iterable[TimelineEntry]) -> list[TimelineEntry]:
        """Append entries atomically, all for the same or different disputes."""
        written: list[TimelineEntry] = []
        with self._lock:
            for entry in entries:
                log = self._entries.setdefault(entry.dispute_id, [])
                stored = entry.model_copy(update={"sequence": len(log)})
                log.append(stored)
                written.append(stored)
        for stored in written:
            logger.debug(
                "Timeline %s #%d by %s (%s)",
                stored.dispute_id,
                stored.sequence,
                stored.sender_id,
                stored.sender_role.value,
            )
        return written

    def list_entries(self, dispute_id: str, limit: int | None = None, offset: int = 0) -> list[TimelineEntry]:
        with self._lock:
            entries = list(self._entries.get(dispute_id, []))
        if limit is None:
            return entries[offset:]
        return entries[offset : offset + limit]

    def count(self, dispute_id: str) -> int:
        with self._lock:
            return len(self._entries.get(dispute_id, []))
