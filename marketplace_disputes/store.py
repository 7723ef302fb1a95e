"""In-memory dispute storage with per-dispute serialization.

Each dispute has its own lock; the store never holds a lock spanning more
than one dispute.  Writes carry the version the writer read, and a write
against a newer version is refused, so a transition computed against stale
state can never land.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Collection, Iterator
from contextlib import contextmanager

from marketplace_disputes.errors import ConcurrentModification, DisputeNotFound
from marketplace_disputes.schemas import Dispute, DisputeState

logger = logging.getLogger(__name__)


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class DisputeStore:
    def __init__(self) -> None:
        self._disputes: dict[str, Dispute] = {}
        # Only keys someone holds or waits on have an entry.
        self._locks: dict[str, _LockEntry] = {}
        # Guards the two dicts above, never held while waiting on a dispute lock.
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Serialize all transitions on one dispute (or any other key, e.g. an order)."""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    @property
    def lock_count(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    # ------------------------------------------------------------------
    # Reads (always return private copies)
    # ------------------------------------------------------------------

    def get(self, dispute_id: str) -> Dispute:
        with self._registry_lock:
            dispute = self._disputes.get(dispute_id)
        if dispute is None:
            raise DisputeNotFound(f"Dispute not found: {dispute_id}")
        return dispute.model_copy(deep=True)

    def exists(self, dispute_id: str) -> bool:
        with self._registry_lock:
            return dispute_id in self._disputes

    def all(self) -> list[Dispute]:
        with self._registry_lock:
            return [d.model_copy(deep=True) for d in self._disputes.values()]

    def ids_in_states(self, states: Collection[DisputeState]) -> list[str]:
        """Snapshot of dispute ids currently in *states*, oldest first."""
        with self._registry_lock:
            matching = [d for d in self._disputes.values() if d.state in states]
        matching.sort(key=lambda d: d.created_at)
        return [d.dispute_id for d in matching]

    def query(
        self,
        predicate: Callable[[Dispute], bool],
        *,
        newest_first: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[Dispute], int]:
        """Return one page of matching disputes and the total match count."""
        with self._registry_lock:
            matching = [d for d in self._disputes.values() if predicate(d)]
        matching.sort(key=lambda d: d.created_at, reverse=newest_first)
        total = len(matching)
        page = matching[offset:] if limit is None else matching[offset : offset + limit]
        return [d.model_copy(deep=True) for d in page], total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, dispute: Dispute) -> Dispute:
        stored = dispute.model_copy(deep=True)
        with self._registry_lock:
            if stored.dispute_id in self._disputes:
                raise ConcurrentModification(f"Dispute already exists: {stored.dispute_id}")
            self._disputes[stored.dispute_id] = stored
        return stored.model_copy(deep=True)

    def save(self, dispute: Dispute, expected_version: int) -> Dispute:
        """Replace the stored dispute if nobody else wrote since *expected_version*."""
        with self._registry_lock:
            current = self._disputes.get(dispute.dispute_id)
            if current is None:
                raise DisputeNotFound(f"Dispute not found: {dispute.dispute_id}")
            if current.version != expected_version:
                logger.warning(
                    "Version conflict on dispute %s (expected %d, found %d)",
                    dispute.dispute_id,
                    expected_version,
                    current.version,
                )
                raise ConcurrentModification(
                    "Dispute was modified concurrently; re-fetch and retry",
                    current_state=current.state.value,
                )
            stored = dispute.model_copy(update={"version": expected_version + 1}, deep=True)
            self._disputes[stored.dispute_id] = stored
        return stored.model_copy(deep=True)
