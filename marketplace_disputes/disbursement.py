"""Refund disbursement: gateway adapters and the request ledger.

The engine never moves money itself.  It records a ``DisbursementRequest``
in ``Pending``, hands it to a ``DisbursementGateway`` and waits for the
gateway's terminal outcome to arrive through the settlement callback.

Idempotency key = ``<dispute_id>:<attempt>``.  A failed request may be
followed by a new attempt with the next counter value; the same key is
never turned into two real transfers, neither by the ledger nor by the
adapters.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from marketplace_disputes.alerts import AlertKind, AlertLog
from marketplace_disputes.errors import (
    DisputeError,
    DisputeNotFound,
    DownstreamUnavailable,
    DuplicateRequest,
    InvalidTransition,
)
from marketplace_disputes.retry import next_attempt_at
from marketplace_disputes.schemas import (
    DisbursementRequest,
    DisbursementState,
    idempotency_key_for,
)

logger = logging.getLogger(__name__)


class DisbursementRejected(DisputeError):
    """The gateway refused the transfer outright (bad recipient, limits)."""


# ---------------------------------------------------------------------------
# Payout identifiers
# ---------------------------------------------------------------------------


class PayoutDirectory:
    """Maps buyer identities to their registered payout identifier (e.g. M-Pesa number)."""

    def __init__(self, identifiers: dict[str, str] | None = None) -> None:
        self._identifiers = dict(identifiers or {})
        self._lock = threading.Lock()

    def register(self, buyer_id: str, identifier: str) -> None:
        with self._lock:
            self._identifiers[buyer_id] = identifier

    def lookup(self, buyer_id: str) -> str | None:
        with self._lock:
            return self._identifiers.get(buyer_id)


# ---------------------------------------------------------------------------
# Gateway adapters
# ---------------------------------------------------------------------------


class DisbursementGateway(ABC):
    """Narrow interface to whatever actually moves money back to the buyer."""

    @abstractmethod
    def request_disbursement(
        self,
        dispute_id: str,
        recipient: str,
        amount: Decimal,
        idempotency_key: str,
        currency: str,
    ) -> str:
        """Submit a transfer and return the gateway's external reference.

        Raises DownstreamUnavailable if the gateway cannot be reached and
        DisbursementRejected if it refuses the transfer.
        """


class HttpDisbursementGateway(DisbursementGateway):
    """Talks to a mobile-money disbursement service over HTTP."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        # Keys already accepted by the gateway in this process.
        self._accepted: dict[str, str] = {}
        self._lock = threading.Lock()

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def request_disbursement(
        self,
        dispute_id: str,
        recipient: str,
        amount: Decimal,
        idempotency_key: str,
        currency: str,
    ) -> str:
        with self._lock:
            known = self._accepted.get(idempotency_key)
        if known is not None:
            logger.info("Disbursement %s already accepted as %s", idempotency_key, known)
            return known

        url = self.base_url.rstrip("/") + "/disbursements"
        payload = {
            "dispute_id": dispute_id,
            "recipient": recipient,
            "amount": str(amount),
            "currency": currency,
            "idempotency_key": idempotency_key,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(url, json=payload, headers=self._headers(idempotency_key))
        except httpx.HTTPError as exc:
            raise DownstreamUnavailable(f"Disbursement gateway unreachable: {exc}") from exc

        # 409: the gateway has seen this key before and returns the original transfer.
        if resp.status_code == 409 or resp.is_success:
            try:
                body = resp.json()
            except ValueError as exc:
                raise DownstreamUnavailable(
                    "Disbursement gateway returned an unreadable response"
                ) from exc
            reference = body.get("reference") if isinstance(body, dict) else None
            if not reference:
                raise DownstreamUnavailable("Disbursement gateway returned no reference")
            with self._lock:
                self._accepted[idempotency_key] = reference
            return reference
        if resp.status_code >= 500 or resp.status_code == 429:
            raise DownstreamUnavailable(f"Disbursement gateway returned {resp.status_code}")
        raise DisbursementRejected(
            f"Disbursement gateway rejected transfer ({resp.status_code}): {resp.text[:200]}"
        )


class SimulatedDisbursementGateway(DisbursementGateway):
    """Local gateway for development and tests; no money moves.

    Records one transfer per idempotency key.  ``unavailable`` makes every
    call raise DownstreamUnavailable; ``reject_recipients`` are refused.
    """

    def __init__(self) -> None:
        self.transfers: dict[str, dict] = {}
        self.calls = 0
        self.unavailable = False
        self.reject_recipients: set[str] = set()
        self._lock = threading.Lock()

    def request_disbursement(
        self,
        dispute_id: str,
        recipient: str,
        amount: Decimal,
        idempotency_key: str,
        currency: str,
    ) -> str:
        with self._lock:
            self.calls += 1
            if self.unavailable:
                raise DownstreamUnavailable("Simulated gateway is unavailable")
            if recipient in self.reject_recipients:
                raise DisbursementRejected(f"Recipient {recipient} refused by gateway")
            existing = self.transfers.get(idempotency_key)
            if existing is not None:
                return existing["reference"]
            reference = f"SIM-{uuid.uuid4().hex[:12].upper()}"
            self.transfers[idempotency_key] = {
                "reference": reference,
                "dispute_id": dispute_id,
                "recipient": recipient,
                "amount": amount,
                "currency": currency,
            }
            return reference


# ---------------------------------------------------------------------------
# Request ledger
# ---------------------------------------------------------------------------


class DisbursementLedger:
    """Durable record of every disbursement attempt, keyed by idempotency key."""

    def __init__(self) -> None:
        self._requests: dict[str, DisbursementRequest] = {}
        self._by_dispute: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def create(
        self,
        dispute_id: str,
        recipient: str,
        amount: Decimal,
        currency: str,
        now: datetime,
    ) -> DisbursementRequest:
        """Open the next attempt for a dispute.  Only allowed after a failure."""
        with self._lock:
            keys = self._by_dispute.get(dispute_id, [])
            if keys:
                latest = self._requests[keys[-1]]
                if latest.state != DisbursementState.FAILED:
                    raise InvalidTransition(
                        f"Dispute {dispute_id} already has a {latest.state.value} disbursement",
                        current_state=latest.state.value,
                    )
            attempt = len(keys) + 1
            request = DisbursementRequest(
                dispute_id=dispute_id,
                recipient=recipient,
                amount=amount,
                currency=currency,
                attempt=attempt,
                idempotency_key=idempotency_key_for(dispute_id, attempt),
                created_at=now,
                updated_at=now,
            )
            self._requests[request.idempotency_key] = request
            self._by_dispute.setdefault(dispute_id, []).append(request.idempotency_key)
        logger.info(
            "Disbursement %s created: %s %s to %s",
            request.idempotency_key,
            request.currency,
            request.amount,
            request.recipient,
        )
        return request

    def get(self, idempotency_key: str) -> DisbursementRequest:
        with self._lock:
            request = self._requests.get(idempotency_key)
        if request is None:
            raise DisputeNotFound(f"No disbursement with idempotency key {idempotency_key!r}")
        return request

    def for_dispute(self, dispute_id: str) -> list[DisbursementRequest]:
        with self._lock:
            return [self._requests[k] for k in self._by_dispute.get(dispute_id, [])]

    def latest(self, dispute_id: str) -> DisbursementRequest | None:
        with self._lock:
            keys = self._by_dispute.get(dispute_id)
            return self._requests[keys[-1]] if keys else None

    def update(
        self, idempotency_key: str, mutate: Callable[[DisbursementRequest], dict]
    ) -> DisbursementRequest:
        """Apply the field changes *mutate* computes from the current record."""
        with self._lock:
            current = self._requests.get(idempotency_key)
            if current is None:
                raise DisputeNotFound(f"No disbursement with idempotency key {idempotency_key!r}")
            changes = mutate(current)
            if not changes:
                return current
            updated = current.model_copy(update=changes)
            self._requests[idempotency_key] = updated
            return updated

    def record_outcome(
        self,
        idempotency_key: str,
        state: DisbursementState,
        now: datetime,
        external_reference: str | None = None,
        failure_reason: str | None = None,
    ) -> DisbursementRequest:
        """Move a Pending request to its terminal state.

        Raises DuplicateRequest carrying the stored request if the outcome
        was already recorded.
        """
        if state == DisbursementState.PENDING:
            raise ValueError("Outcome must be settled or failed")
        with self._lock:
            current = self._requests.get(idempotency_key)
            if current is None:
                raise DisputeNotFound(f"No disbursement with idempotency key {idempotency_key!r}")
            if current.state != DisbursementState.PENDING:
                raise DuplicateRequest(
                    f"Outcome for {idempotency_key} already recorded as {current.state.value}",
                    original=current,
                )
            changes: dict = {"state": state, "updated_at": now}
            if external_reference:
                changes["external_reference"] = external_reference
            if state == DisbursementState.SETTLED:
                changes["settled_at"] = now
            else:
                changes["failure_reason"] = failure_reason or "unspecified failure"
            updated = current.model_copy(update=changes)
            self._requests[idempotency_key] = updated
        return updated

    def due_for_dispatch(self, now: datetime) -> list[DisbursementRequest]:
        with self._lock:
            return [
                r
                for r in self._requests.values()
                if r.state == DisbursementState.PENDING
                and not r.dispatched
                and not r.dispatch_abandoned
                and (r.next_dispatch_at is None or r.next_dispatch_at <= now)
            ]

    def total_settled(self) -> Decimal:
        with self._lock:
            return sum(
                (r.amount for r in self._requests.values() if r.state == DisbursementState.SETTLED),
                Decimal("0"),
            )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class DisbursementDispatcher:
    """Hands Pending requests to the gateway with bounded backoff.

    Dispatch never changes a request's terminal state; it only records that
    the gateway accepted it (and the external reference) or schedules the
    next try.  The caller decides what a rejection means for the dispute.
    """

    def __init__(
        self,
        gateway: DisbursementGateway,
        ledger: DisbursementLedger,
        alerts: AlertLog,
        *,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30.0,
        backoff_max_seconds: float = 900.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.alerts = alerts
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base_seconds
        self.backoff_max = backoff_max_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def dispatch(self, idempotency_key: str) -> DisbursementRequest:
        """Send one request to the gateway.

        Raises DisbursementRejected if the gateway refuses the transfer.
        """
        request = self.ledger.get(idempotency_key)
        if (
            request.state != DisbursementState.PENDING
            or request.dispatched
            or request.dispatch_abandoned
        ):
            return request

        with self._lock:
            if idempotency_key in self._in_flight:
                return request
            self._in_flight.add(idempotency_key)
        try:
            return self._send(request)
        finally:
            with self._lock:
                self._in_flight.discard(idempotency_key)

    def _send(self, request: DisbursementRequest) -> DisbursementRequest:
        key = request.idempotency_key
        try:
            reference = self.gateway.request_disbursement(
                request.dispute_id,
                request.recipient,
                request.amount,
                key,
                request.currency,
            )
        except DownstreamUnavailable as exc:
            return self._schedule_retry(key, str(exc))

        now = self._clock()
        logger.info("Disbursement %s accepted by gateway as %s", key, reference)
        return self.ledger.update(
            key,
            lambda current: {
                "dispatched": True,
                "dispatch_attempts": current.dispatch_attempts + 1,
                "next_dispatch_at": None,
                "external_reference": current.external_reference or reference,
                "updated_at": now,
            },
        )

    def _schedule_retry(self, key: str, reason: str) -> DisbursementRequest:
        now = self._clock()

        def _changes(current: DisbursementRequest) -> dict:
            attempts = current.dispatch_attempts + 1
            if attempts >= self.max_attempts:
                return {"dispatch_attempts": attempts, "dispatch_abandoned": True, "updated_at": now}
            return {
                "dispatch_attempts": attempts,
                "next_dispatch_at": next_attempt_at(now, attempts, self.backoff_base, self.backoff_max),
                "updated_at": now,
            }

        updated = self.ledger.update(key, _changes)
        if updated.dispatch_abandoned:
            self.alerts.raise_alert(
                AlertKind.GATEWAY_UNREACHABLE,
                f"Disbursement {key} could not reach the gateway after "
                f"{updated.dispatch_attempts} attempts: {reason}",
                dispute_id=updated.dispute_id,
            )
        else:
            logger.warning(
                "Disbursement %s dispatch failed (attempt %d/%d), next try at %s: %s",
                key,
                updated.dispatch_attempts,
                self.max_attempts,
                updated.next_dispatch_at.isoformat() if updated.next_dispatch_at else "-",
                reason,
            )
        return updated

    def reset(self, idempotency_key: str) -> DisbursementRequest:
        """Re-arm a request whose dispatch was abandoned (manual admin retry)."""
        now = self._clock()
        return self.ledger.update(
            idempotency_key,
            lambda current: {
                "dispatch_abandoned": False,
                "dispatch_attempts": 0,
                "next_dispatch_at": None,
                "updated_at": now,
            },
        )
