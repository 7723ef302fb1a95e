"""Deadline scheduler.

The functions at the top are the only code that turns elapsed time into
dispute expiry.  ``DeadlineScheduler`` is a daemon thread that periodically
sweeps the store and asks the engine to apply the time-based transitions:

* response window lapsed   -> escalate to admin review
* negotiation window lapsed -> escalate to admin review
* grace period after a refund-free resolution, or after a refund
  that failed past the retry cap -> close

Each sweep also re-dispatches refunds the gateway could not accept earlier
and redelivers queued notifications.  Disputes are handled one at a time
and a failure on one never stops the rest of the sweep.  The engine
re-checks each guard under the dispute's lock, so overlapping or repeated
sweeps cannot apply a transition twice.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from marketplace_disputes.config import DisputeSettings
from marketplace_disputes.errors import DisputeError, InvalidTransition
from marketplace_disputes.schemas import DisbursementRequest, DisbursementState, Dispute, DisputeState

if TYPE_CHECKING:
    from marketplace_disputes.engine import DisputeEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Deadline math
# ---------------------------------------------------------------------------


def response_deadline(dispute: Dispute, settings: DisputeSettings) -> datetime:
    return dispute.created_at + timedelta(days=settings.response_window_days)


def negotiation_deadline(dispute: Dispute, settings: DisputeSettings) -> datetime | None:
    if dispute.seller_responded_at is None:
        return None
    return dispute.seller_responded_at + timedelta(days=settings.negotiation_window_days)


def current_deadline(dispute: Dispute, settings: DisputeSettings) -> datetime | None:
    """The deadline that applies in the dispute's current state, if any."""
    if dispute.state is DisputeState.AWAITING_SELLER_RESPONSE:
        return response_deadline(dispute, settings)
    if dispute.state is DisputeState.IN_NEGOTIATION:
        return negotiation_deadline(dispute, settings)
    return None


def deadline_elapsed(dispute: Dispute, now: datetime, settings: DisputeSettings) -> bool:
    # Reaching the deadline exactly counts as elapsed.
    deadline = current_deadline(dispute, settings)
    return deadline is not None and now >= deadline


def is_urgent(dispute: Dispute, now: datetime, settings: DisputeSettings) -> bool:
    """Awaiting a response with no more than the urgent threshold left."""
    if dispute.state is not DisputeState.AWAITING_SELLER_RESPONSE:
        return False
    remaining = response_deadline(dispute, settings) - now
    return remaining <= timedelta(days=settings.urgent_threshold_days)


def close_due(
    dispute: Dispute,
    now: datetime,
    settings: DisputeSettings,
    latest_refund: DisbursementRequest | None = None,
) -> bool:
    """Resolved and past the grace period.

    The grace period runs from the resolution when there is no refund, or
    from the last failed attempt once the refund has failed past the retry
    cap.  A refund still in progress is never closed by the clock.
    """
    if dispute.state is not DisputeState.RESOLVED or dispute.resolved_at is None:
        return False
    if latest_refund is None:
        since = dispute.resolved_at
    elif refund_exhausted(latest_refund, settings):
        since = latest_refund.updated_at
    else:
        return False
    return now >= since + timedelta(hours=settings.close_grace_hours)


def refund_exhausted(request: DisbursementRequest, settings: DisputeSettings) -> bool:
    return (
        request.state == DisbursementState.FAILED
        and request.attempt >= settings.disbursement_max_attempts
    )


# ---------------------------------------------------------------------------
# Background worker
# ---------------------------------------------------------------------------


class DeadlineScheduler:
    """Daemon thread that drives every time-based transition."""

    def __init__(
        self,
        engine: DisputeEngine,
        interval: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self._interval = (
            interval if interval is not None else engine.settings.sweep_interval_seconds
        )
        self._clock = clock or engine.clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        # Serializes sweeps started by the thread and by explicit calls.
        self._sweep_lock = threading.Lock()
        self._last_sweep_at: datetime | None = None
        self._last_summary: dict[str, int] = {}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_sweep_at(self) -> datetime | None:
        return self._last_sweep_at

    def start(self) -> None:
        """Start the sweep thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="deadline-scheduler")
        self._thread.start()
        logger.info("Deadline scheduler started (interval=%.1fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the worker to stop and wait up to *timeout* seconds."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Deadline scheduler stopped")

    def status(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "last_sweep_at": self._last_sweep_at.isoformat() if self._last_sweep_at else None,
            "last_summary": dict(self._last_summary),
            "queued_notifications": self.engine.events.queued,
        }

    def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Run one pass over all timed disputes and pending side effects."""
        with self._sweep_lock:
            now = now or self._clock()
            summary = {"escalated": 0, "closed": 0, "dispatched": 0, "redelivered": 0, "errors": 0}
            store = self.engine.store
            settings = self.engine.settings

            timed = store.ids_in_states(
                (DisputeState.AWAITING_SELLER_RESPONSE, DisputeState.IN_NEGOTIATION)
            )
            for dispute_id in timed:
                outcome = self._apply(self.engine.fire_deadline, dispute_id, now, settings, deadline_elapsed)
                if outcome == "applied":
                    summary["escalated"] += 1
                elif outcome == "error":
                    summary["errors"] += 1

            ledger = self.engine.ledger

            def _closable(dispute: Dispute, at: datetime, cfg: DisputeSettings) -> bool:
                return close_due(dispute, at, cfg, ledger.latest(dispute.dispute_id))

            for dispute_id in store.ids_in_states((DisputeState.RESOLVED,)):
                outcome = self._apply(self.engine.close_if_due, dispute_id, now, settings, _closable)
                if outcome == "applied":
                    summary["closed"] += 1
                elif outcome == "error":
                    summary["errors"] += 1

            try:
                summary["dispatched"] = self.engine.dispatch_due(now)
            except Exception:
                logger.exception("Refund dispatch pass failed")
                summary["errors"] += 1
            try:
                summary["redelivered"] = self.engine.events.redeliver_due(now)
            except Exception:
                logger.exception("Notification redelivery pass failed")
                summary["errors"] += 1

            self._last_sweep_at = now
            self._last_summary = summary

        if summary["escalated"] or summary["closed"] or summary["errors"]:
            logger.info(
                "Sweep at %s: %d escalated, %d closed, %d dispatched, %d redelivered, %d errors",
                now.isoformat(),
                summary["escalated"],
                summary["closed"],
                summary["dispatched"],
                summary["redelivered"],
                summary["errors"],
            )
        return summary

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _apply(self, transition, dispute_id: str, now: datetime, settings, guard) -> str:
        """Fire *transition* if *guard* holds; returns applied, skipped or error."""
        try:
            dispute = self.engine.store.get(dispute_id)
            if not guard(dispute, now, settings):
                return "skipped"
            transition(dispute_id, now)
            return "applied"
        except InvalidTransition:
            # Moved by someone else between the snapshot and the lock.
            return "skipped"
        except DisputeError as exc:
            logger.warning("Sweep skipped dispute %s: %s", dispute_id, exc)
        except Exception:
            logger.exception("Sweep failed on dispute %s", dispute_id)
        return "error"

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(timeout=self._interval)

    def _tick(self) -> None:
        self.sweep(self._clock())
