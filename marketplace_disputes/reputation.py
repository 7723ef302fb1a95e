"""Seller reputation ledger.

One record per seller holding a score bounded to [0, 100] and the full
history of deltas that produced it.  ``apply_delta`` is the only mutator.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal

from marketplace_disputes.schemas import ReputationDelta, ReputationRecord

logger = logging.getLogger(__name__)

MIN_SCORE = Decimal("0")
MAX_SCORE = Decimal("100")


def clamp_score(value: Decimal) -> Decimal:
    return max(MIN_SCORE, min(MAX_SCORE, value))


class ReputationLedger:
    """In-memory ledger; records persist independently of any dispute."""

    def __init__(self, initial_score: Decimal | int | str = MAX_SCORE) -> None:
        self._initial = clamp_score(Decimal(initial_score))
        self._scores: dict[str, Decimal] = {}
        self._history: dict[str, list[ReputationDelta]] = {}
        self._lock = threading.Lock()

    def apply_delta(
        self,
        seller_id: str,
        amount: Decimal | int | str,
        reason: str,
        dispute_ref: str | None = None,
        *,
        at: datetime | None = None,
    ) -> ReputationDelta:
        """Add *amount* to the seller's score, clamped into [0, 100]."""
        amount = Decimal(amount)
        with self._lock:
            before = self._scores.get(seller_id, self._initial)
            after = clamp_score(before + amount)
            delta = ReputationDelta(
                seller_id=seller_id,
                amount=amount,
                reason=reason,
                dispute_id=dispute_ref,
                score_before=before,
                score_after=after,
                applied_at=at or datetime.now(timezone.utc),
            )
            self._scores[seller_id] = after
            self._history.setdefault(seller_id, []).append(delta)

        logger.info(
            "Reputation %s: %s %s -> %s (%s, dispute=%s)",
            seller_id,
            before,
            f"{amount:+}",
            after,
            reason,
            dispute_ref or "none",
        )
        return delta

    def score(self, seller_id: str) -> Decimal:
        with self._lock:
            return self._scores.get(seller_id, self._initial)

    def record(self, seller_id: str) -> ReputationRecord:
        with self._lock:
            return ReputationRecord(
                seller_id=seller_id,
                score=self._scores.get(seller_id, self._initial),
                history=list(self._history.get(seller_id, [])),
            )

    def deltas_for_dispute(self, dispute_id: str) -> list[ReputationDelta]:
        with self._lock:
            return [
                d
                for history in self._history.values()
                for d in history
                if d.dispute_id == dispute_id
            ]
