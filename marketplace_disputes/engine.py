"""Dispute state machine.

Owns the ``Dispute`` aggregate and every legal transition on it:

    awaiting_seller_response --seller_respond--> in_negotiation
    awaiting_seller_response --response deadline--> admin_review
    in_negotiation --matching proposals--> resolved
    in_negotiation --escalate / negotiation deadline--> admin_review
    admin_review --admin_decide--> resolved
    resolved --refund settled / grace period / admin close--> closed

Every operation runs under the dispute's own lock against a private copy
of the aggregate.  Validation happens before anything is written; the
dispute, its timeline entries, reputation deltas and any disbursement
record are then written together, and only after that are events
published and the refund handed to the gateway.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from marketplace_disputes.alerts import AlertKind, AlertLog, OperatorAlert
from marketplace_disputes.authorization import Operation, authorize
from marketplace_disputes.config import DisputeSettings
from marketplace_disputes.config import settings as default_settings
from marketplace_disputes.disbursement import (
    DisbursementDispatcher,
    DisbursementGateway,
    DisbursementLedger,
    DisbursementRejected,
    HttpDisbursementGateway,
    PayoutDirectory,
    SimulatedDisbursementGateway,
)
from marketplace_disputes.errors import (
    DuplicateRequest,
    InvalidTransition,
    ValidationError,
)
from marketplace_disputes.events import EventPublisher, WebhookNotifier
from marketplace_disputes.evidence import record_references, validate_submission
from marketplace_disputes.reputation import ReputationLedger
from marketplace_disputes.scheduler import (
    close_due,
    deadline_elapsed,
    is_urgent,
    response_deadline,
)
from marketplace_disputes.schemas import (
    SYSTEM_CALLER_ID,
    Caller,
    DisbursementRequest,
    DisbursementState,
    Dispute,
    DisputeDetail,
    DisputePage,
    DisputeState,
    DisputeStats,
    DomainEvent,
    EventType,
    EvidenceInput,
    IssueCategory,
    Proposal,
    ReputationRecord,
    ResolutionKind,
    SellerDisputePage,
    SenderRole,
    TimelineEntry,
)
from marketplace_disputes.store import DisputeStore
from marketplace_disputes.timeline import TimelineLog

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(amount: Decimal, currency: str) -> str:
    return f"{currency} {amount:,}"


def _parse_amount(value: Decimal | int | str | None, what: str) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{what} is not a valid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"{what} is not a valid amount: {value!r}")
    return amount


def _parse_kind(kind: ResolutionKind | str) -> ResolutionKind:
    try:
        parsed = ResolutionKind(kind)
    except ValueError as exc:
        raise ValidationError(f"Unrecognized resolution: {kind!r}") from exc
    if parsed is ResolutionKind.UNDECIDED:
        raise ValidationError("A resolution must be decided, not 'undecided'")
    return parsed


@dataclass
class _Effects:
    """Everything a transition writes besides the dispute itself."""

    now: datetime
    entries: list[TimelineEntry] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)
    reputation: list[tuple[str, Decimal, str]] = field(default_factory=list)
    disbursement: tuple[str, Decimal] | None = None
    dispatch_keys: list[str] = field(default_factory=list)

    def log(
        self,
        dispute: Dispute,
        sender_id: str,
        role: SenderRole,
        message: str,
        evidence=None,
    ) -> None:
        self.entries.append(
            TimelineEntry(
                dispute_id=dispute.dispute_id,
                sender_id=sender_id,
                sender_role=role,
                message=message,
                evidence=evidence,
                created_at=self.now,
            )
        )

    def emit(self, dispute: Dispute, event_type: EventType, **payload) -> None:
        self.events.append(
            DomainEvent(
                event_type=event_type,
                dispute_id=dispute.dispute_id,
                payload=payload,
                occurred_at=self.now,
            )
        )


class DisputeEngine:
    """Caller-facing operations plus the callbacks the scheduler and gateway drive."""

    def __init__(
        self,
        *,
        settings: DisputeSettings | None = None,
        store: DisputeStore | None = None,
        timeline: TimelineLog | None = None,
        reputation: ReputationLedger | None = None,
        ledger: DisbursementLedger | None = None,
        gateway: DisbursementGateway | None = None,
        payout_directory: PayoutDirectory | None = None,
        alerts: AlertLog | None = None,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.clock = clock or _utcnow
        self.store = store or DisputeStore()
        self.timeline = timeline or TimelineLog()
        self.reputation = reputation or ReputationLedger(self.settings.initial_score)
        self.alerts = alerts or AlertLog()
        self.events = events or EventPublisher(
            self.alerts,
            max_attempts=self.settings.notify_max_attempts,
            backoff_base_seconds=self.settings.dispatch_backoff_base_seconds,
            backoff_max_seconds=self.settings.dispatch_backoff_max_seconds,
            clock=self.clock,
        )
        self.ledger = ledger or DisbursementLedger()
        self.gateway = gateway or SimulatedDisbursementGateway()
        self.payouts = payout_directory or PayoutDirectory()
        self.dispatcher = DisbursementDispatcher(
            self.gateway,
            self.ledger,
            self.alerts,
            max_attempts=self.settings.dispatch_max_attempts,
            backoff_base_seconds=self.settings.dispatch_backoff_base_seconds,
            backoff_max_seconds=self.settings.dispatch_backoff_max_seconds,
            clock=self.clock,
        )
        # None: refunds are handed to the gateway on the calling thread.
        self._executor = executor

    # ------------------------------------------------------------------
    # Commit helpers
    # ------------------------------------------------------------------

    def _require_state(
        self, dispute: Dispute, operation: str, allowed: Sequence[DisputeState]
    ) -> None:
        if dispute.state not in allowed:
            raise InvalidTransition(
                f"Cannot {operation.replace('_', ' ')} a dispute that is {dispute.state.value}",
                current_state=dispute.state.value,
            )

    def _commit(self, dispute: Dispute, effects: _Effects, *, insert: bool = False) -> Dispute:
        dispute.updated_at = effects.now
        if insert:
            committed = self.store.insert(dispute)
        else:
            committed = self.store.save(dispute, dispute.version)
        effects.events = [
            e.model_copy(update={"dispute_version": committed.version}) for e in effects.events
        ]
        if effects.disbursement is not None:
            recipient, amount = effects.disbursement
            request = self.ledger.create(
                dispute.dispute_id, recipient, amount, dispute.currency, effects.now
            )
            effects.dispatch_keys.append(request.idempotency_key)
        self.timeline.append_many(effects.entries)
        for seller_id, amount, reason in effects.reputation:
            self.reputation.apply_delta(seller_id, amount, reason, dispute.dispute_id, at=effects.now)
        return committed

    def _after_commit(self, effects: _Effects) -> None:
        if effects.events:
            self.events.publish(effects.events)
        for key in effects.dispatch_keys:
            if self._executor is not None:
                self._executor.submit(self._dispatch_safely, key)
            else:
                self._dispatch_safely(key)

    def _dispatch_safely(self, idempotency_key: str) -> None:
        try:
            self.dispatch(idempotency_key)
        except Exception:
            logger.exception("Dispatch of disbursement %s failed", idempotency_key)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _validate_resolution(
        self, dispute: Dispute, kind: ResolutionKind, amount: Decimal | None
    ) -> Decimal | None:
        """Return the resolution amount implied by *kind*, or raise ValidationError."""
        if kind.implies_refund and not dispute.category.refundable:
            raise ValidationError(
                f"Disputes in category '{dispute.category.label}' cannot be refunded"
            )
        if kind is ResolutionKind.FULL_REFUND:
            if amount is None:
                return dispute.amount
            if amount != dispute.amount:
                raise ValidationError(
                    f"A full refund must equal the disputed amount "
                    f"({_money(dispute.amount, dispute.currency)})"
                )
            return amount
        if kind is ResolutionKind.PARTIAL_REFUND:
            if amount is None:
                raise ValidationError("A partial refund needs an amount")
            if amount <= 0:
                raise ValidationError("Refund amount must be greater than zero")
            if amount > dispute.amount:
                raise ValidationError(
                    f"Refund amount cannot exceed the disputed amount "
                    f"({_money(dispute.amount, dispute.currency)})"
                )
            return amount
        if amount is not None:
            raise ValidationError(f"A {kind.value} resolution does not carry an amount")
        return None

    def _clean_payout_identifier(self, identifier: str | None) -> str:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("A payout identifier is required")
        if len(identifier) > self.settings.max_payout_identifier_length:
            raise ValidationError(
                f"Payout identifier must be at most "
                f"{self.settings.max_payout_identifier_length} characters"
            )
        return identifier

    def _refund_recipient(self, dispute: Dispute, fallback: str | None = None) -> str:
        recipient = self.payouts.lookup(dispute.buyer_id) or fallback
        if not recipient:
            raise ValidationError(
                "Buyer has no registered payout identifier for the refund; "
                "the buyer must register one before a refund can be ordered"
            )
        return recipient

    def _require_no_active_disbursement(self, dispute: Dispute) -> None:
        latest = self.ledger.latest(dispute.dispute_id)
        if latest is not None and latest.state != DisbursementState.FAILED:
            raise InvalidTransition(
                f"Dispute already has a {latest.state.value} refund",
                current_state=dispute.state.value,
            )

    def _page(self, limit: int | None, offset: int) -> tuple[int, int]:
        if limit is None:
            limit = self.settings.default_page_size
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        return min(limit, self.settings.max_page_size), offset

    def _resolve(
        self,
        dispute: Dispute,
        effects: _Effects,
        kind: ResolutionKind,
        amount: Decimal | None,
        details: str,
    ) -> None:
        dispute.state = DisputeState.RESOLVED
        dispute.resolution = kind
        dispute.resolution_amount = amount
        dispute.resolution_details = details
        dispute.resolved_at = effects.now
        if kind.implies_refund and amount is not None:
            effects.disbursement = (self._refund_recipient(dispute), amount)
            dispute.refund_status = DisbursementState.PENDING

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        caller: Caller,
        *,
        order_id: str,
        seller_id: str,
        category: IssueCategory | str,
        title: str,
        description: str,
        amount: Decimal | int | str,
        evidence: Sequence[EvidenceInput],
        currency: str | None = None,
        payout_identifier: str | None = None,
    ) -> Dispute:
        """Buyer files a dispute against the seller of *order_id*.

        *payout_identifier* (the buyer's mobile-money number) is remembered
        for any refund the dispute later resolves to.
        """
        authorize(caller, Operation.OPEN_DISPUTE)
        buyer_id = caller.user_id
        s = self.settings

        if not order_id or not order_id.strip():
            raise ValidationError("An order reference is required")
        if not seller_id or not seller_id.strip():
            raise ValidationError("A seller is required")
        if seller_id == buyer_id:
            raise ValidationError("You cannot open a dispute against yourself")
        try:
            category = IssueCategory(category)
        except ValueError as exc:
            raise ValidationError(f"Unrecognized issue category: {category!r}") from exc
        title = (title or "").strip()
        if not title:
            raise ValidationError("A title is required")
        if len(title) > s.max_title_length:
            raise ValidationError(f"Title must be at most {s.max_title_length} characters")
        description = (description or "").strip()
        if len(description) < s.min_description_length:
            raise ValidationError(
                f"Please provide at least {s.min_description_length} characters of detail"
            )
        if len(description) > s.max_description_length:
            raise ValidationError(
                f"Description must be at most {s.max_description_length} characters"
            )
        parsed_amount = _parse_amount(amount, "Disputed amount")
        if parsed_amount is None or parsed_amount <= 0:
            raise ValidationError("Disputed amount must be greater than zero")
        if not evidence:
            raise ValidationError("At least one piece of evidence is required")
        validate_submission(evidence, max_items=s.max_buyer_evidence, settings=s)
        payout = None
        if payout_identifier and payout_identifier.strip():
            payout = self._clean_payout_identifier(payout_identifier)

        with self.store.locked(f"order:{order_id}"):
            existing, _ = self.store.query(
                lambda d: d.order_id == order_id and d.state != DisputeState.CLOSED, limit=1
            )
            if existing:
                raise InvalidTransition(
                    f"Order {order_id} already has an active dispute ({existing[0].dispute_id})",
                    current_state=existing[0].state.value,
                )
            if s.max_open_disputes_per_seller > 0:
                _, open_count = self.store.query(
                    lambda d: d.seller_id == seller_id and d.is_open, limit=0
                )
                if open_count >= s.max_open_disputes_per_seller:
                    raise ValidationError(
                        "This seller has too many unresolved disputes; contact support"
                    )

            effects = _Effects(now=self.clock())
            dispute = Dispute(
                order_id=order_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                category=category,
                title=title,
                description=description,
                amount=parsed_amount,
                currency=currency or s.currency,
                evidence=record_references(evidence, uploaded_by=buyer_id, uploaded_at=effects.now),
                created_at=effects.now,
            )
            effects.log(dispute, buyer_id, SenderRole.BUYER, f"Dispute opened: {title}\n\n{description}")
            effects.reputation.append((seller_id, s.open_penalty, "dispute_opened"))
            effects.emit(
                dispute,
                EventType.DISPUTE_OPENED,
                order_id=order_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                category=category.value,
                amount=str(parsed_amount),
                respond_by=response_deadline(dispute, s).isoformat(),
            )
            committed = self._commit(dispute, effects, insert=True)
            if payout:
                self.payouts.register(buyer_id, payout)

        logger.info(
            "Dispute %s opened by %s against %s for order %s (%s)",
            committed.dispute_id,
            buyer_id,
            seller_id,
            order_id,
            _money(committed.amount, committed.currency),
        )
        self._after_commit(effects)
        return committed

    def register_payout_identifier(self, caller: Caller, dispute_id: str, identifier: str) -> Dispute:
        """Buyer records (or corrects) where refunds should be sent.

        Can be done at any point before the dispute is closed; later refund
        attempts, including automatic and admin retries, use the new value.
        """
        payout = self._clean_payout_identifier(identifier)
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            authorize(caller, Operation.REGISTER_PAYOUT, dispute=dispute)
            if dispute.state is DisputeState.CLOSED:
                raise InvalidTransition(
                    "This dispute is closed; its refund details can no longer change",
                    current_state=dispute.state.value,
                )
            self.payouts.register(dispute.buyer_id, payout)

        logger.info("Payout identifier updated by buyer %s (dispute %s)", caller.user_id, dispute_id)
        return dispute

    # ------------------------------------------------------------------
    # Seller response
    # ------------------------------------------------------------------

    def seller_respond(
        self,
        caller: Caller,
        dispute_id: str,
        text: str,
        evidence: Sequence[EvidenceInput] = (),
    ) -> Dispute:
        s = self.settings
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            authorize(caller, Operation.SELLER_RESPOND, dispute=dispute)
            self._require_state(dispute, "respond to", [DisputeState.AWAITING_SELLER_RESPONSE])
            text = (text or "").strip()
            if len(text) < s.min_response_length:
                raise ValidationError(f"Response must be at least {s.min_response_length} characters")
            if len(text) > s.max_message_length:
                raise ValidationError(f"Response must be at most {s.max_message_length} characters")
            validate_submission(evidence, max_items=s.max_seller_evidence, settings=s)

            effects = _Effects(now=self.clock())
            refs = record_references(evidence, uploaded_by=caller.user_id, uploaded_at=effects.now)
            dispute.evidence.extend(refs)
            dispute.seller_response = text
            dispute.seller_responded_at = effects.now
            dispute.state = DisputeState.IN_NEGOTIATION
            effects.log(dispute, caller.user_id, SenderRole.SELLER, text)
            effects.emit(dispute, EventType.SELLER_RESPONDED, evidence_count=len(refs))
            committed = self._commit(dispute, effects)

        logger.info("Dispute %s: seller responded, now in negotiation", dispute_id)
        self._after_commit(effects)
        return committed

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    def propose_agreement(
        self,
        caller: Caller,
        dispute_id: str,
        kind: ResolutionKind | str,
        amount: Decimal | int | str | None = None,
    ) -> Dispute:
        """Record the caller's proposed settlement.

        When the counterpart's standing proposal has the same terms the
        dispute is resolved; conflicting proposals leave it in negotiation.
        """
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            role = authorize(caller, Operation.PROPOSE_AGREEMENT, dispute=dispute)
            self._require_state(dispute, "propose a resolution for", [DisputeState.IN_NEGOTIATION])
            kind = _parse_kind(kind)
            resolved_amount = self._validate_resolution(
                dispute, kind, _parse_amount(amount, "Resolution amount")
            )

            effects = _Effects(now=self.clock())
            proposal = Proposal(
                proposed_by=caller.user_id,
                role=role,
                kind=kind,
                amount=resolved_amount,
                proposed_at=effects.now,
            )
            if role is SenderRole.BUYER:
                dispute.buyer_proposal = proposal
                counterpart = dispute.seller_proposal
            else:
                dispute.seller_proposal = proposal
                counterpart = dispute.buyer_proposal

            terms = kind.value
            if resolved_amount is not None:
                terms += f" ({_money(resolved_amount, dispute.currency)})"
            effects.log(dispute, caller.user_id, role, f"Proposed resolution: {terms}")

            agreed = counterpart is not None and counterpart.terms() == proposal.terms()
            if agreed:
                self._require_no_active_disbursement(dispute)
                self._resolve(
                    dispute, effects, kind, resolved_amount, f"Agreed by buyer and seller: {terms}"
                )
                effects.log(
                    dispute,
                    SYSTEM_CALLER_ID,
                    SenderRole.SYSTEM,
                    f"Both parties agreed on {terms}. Dispute resolved.",
                )
                effects.emit(
                    dispute,
                    EventType.DISPUTE_RESOLVED,
                    resolution=kind.value,
                    amount=str(resolved_amount) if resolved_amount is not None else None,
                    decided_by="agreement",
                )
            committed = self._commit(dispute, effects)

        if agreed:
            logger.info("Dispute %s resolved by agreement: %s", dispute_id, terms)
        else:
            logger.info("Dispute %s: %s proposed %s", dispute_id, role.value, terms)
        self._after_commit(effects)
        return committed

    def accept_agreement(
        self,
        caller: Caller,
        dispute_id: str,
        expected: tuple[ResolutionKind | str, Decimal | int | str | None] | None = None,
    ) -> Dispute:
        """Accept the counterpart's standing proposal as-is.

        *expected* is the ``(kind, amount)`` the caller saw; if the other
        party has since replaced its proposal the accept is refused rather
        than binding the caller to terms it never reviewed.
        """
        # Reentrant: propose_agreement takes the same lock.
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            role = authorize(caller, Operation.PROPOSE_AGREEMENT, dispute=dispute)
            counterpart = (
                dispute.seller_proposal if role is SenderRole.BUYER else dispute.buyer_proposal
            )
            if counterpart is None:
                raise InvalidTransition(
                    "There is no proposal from the other party to accept",
                    current_state=dispute.state.value,
                )
            if expected is not None:
                kind, amount = expected
                seen = (_parse_kind(kind), _parse_amount(amount, "Resolution amount"))
                if seen != counterpart.terms():
                    raise InvalidTransition(
                        "The other party's proposal changed; review it before accepting",
                        current_state=dispute.state.value,
                    )
            return self.propose_agreement(caller, dispute_id, counterpart.kind, counterpart.amount)

    def escalate(self, caller: Caller, dispute_id: str, reason: str | None = None) -> Dispute:
        """Either party hands a stalled negotiation to an admin."""
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            role = authorize(caller, Operation.ESCALATE, dispute=dispute)
            self._require_state(dispute, "escalate", [DisputeState.IN_NEGOTIATION])
            reason = (reason or "").strip() or None
            if reason and len(reason) > self.settings.max_message_length:
                raise ValidationError(
                    f"Reason must be at most {self.settings.max_message_length} characters"
                )

            effects = _Effects(now=self.clock())
            dispute.state = DisputeState.ADMIN_REVIEW
            dispute.escalated_at = effects.now
            dispute.escalation_reason = reason or f"Escalated by {role.value}"
            message = "Escalated to admin review"
            if reason:
                message += f": {reason}"
            effects.log(dispute, caller.user_id, role, message)
            effects.emit(dispute, EventType.ESCALATED_TO_ADMIN, trigger="manual", by=role.value)
            committed = self._commit(dispute, effects)

        logger.info("Dispute %s escalated to admin by %s", dispute_id, role.value)
        self._after_commit(effects)
        return committed

    # ------------------------------------------------------------------
    # Deadlines (driven by the scheduler only)
    # ------------------------------------------------------------------

    def fire_deadline(self, dispute_id: str, now: datetime | None = None) -> Dispute:
        """Escalate a dispute whose response or negotiation window has lapsed.

        Raises InvalidTransition if the dispute is no longer in a timed state
        or its window is still open, which makes repeated sweeps harmless.
        """
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            now = now or self.clock()
            self._require_state(
                dispute,
                "auto-escalate",
                [DisputeState.AWAITING_SELLER_RESPONSE, DisputeState.IN_NEGOTIATION],
            )
            if not deadline_elapsed(dispute, now, self.settings):
                raise InvalidTransition(
                    "Deadline has not elapsed yet", current_state=dispute.state.value
                )

            effects = _Effects(now=now)
            if dispute.state is DisputeState.AWAITING_SELLER_RESPONSE:
                trigger = "response_deadline"
                message = (
                    f"Seller did not respond within {self.settings.response_window_days:g} days. "
                    "Escalated to admin review automatically."
                )
            else:
                trigger = "negotiation_deadline"
                message = (
                    f"No agreement reached within {self.settings.negotiation_window_days:g} days. "
                    "Escalated to admin review automatically."
                )
            dispute.state = DisputeState.ADMIN_REVIEW
            dispute.escalated_at = now
            dispute.escalation_reason = trigger
            effects.log(dispute, SYSTEM_CALLER_ID, SenderRole.SYSTEM, message)
            effects.emit(dispute, EventType.ESCALATED_TO_ADMIN, trigger=trigger, by="system")
            committed = self._commit(dispute, effects)

        logger.info("Dispute %s auto-escalated (%s)", dispute_id, trigger)
        self._after_commit(effects)
        return committed

    def close_if_due(self, dispute_id: str, now: datetime | None = None) -> Dispute:
        """Archive a resolved dispute once its grace period has passed.

        Applies when there is no refund, or when the refund failed past the
        retry cap and no admin retried it within the grace period.
        """
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            now = now or self.clock()
            self._require_state(dispute, "archive", [DisputeState.RESOLVED])
            latest = self.ledger.latest(dispute_id)
            if not close_due(dispute, now, self.settings, latest):
                raise InvalidTransition("Dispute is not due for closing", current_state=dispute.state.value)

            effects = _Effects(now=now)
            dispute.state = DisputeState.CLOSED
            dispute.closed_at = now
            message = "Dispute closed."
            if latest is not None:
                message = (
                    f"Refund could not be completed after {latest.attempt} attempts "
                    "and was not retried. Dispute closed."
                )
            effects.log(dispute, SYSTEM_CALLER_ID, SenderRole.SYSTEM, message)
            committed = self._commit(dispute, effects)

        logger.info("Dispute %s closed after grace period", dispute_id)
        return committed

    # ------------------------------------------------------------------
    # Admin arbitration
    # ------------------------------------------------------------------

    def admin_decide(
        self,
        caller: Caller,
        dispute_id: str,
        kind: ResolutionKind | str,
        reasoning: str,
        amount: Decimal | int | str | None = None,
    ) -> Dispute:
        """Final, irreversible ruling on an escalated dispute.

        Returns once the ruling (and any Pending refund) is recorded; the
        refund itself settles later through ``record_disbursement_outcome``.
        """
        s = self.settings
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            authorize(caller, Operation.ADMIN_DECIDE, dispute=dispute)
            self._require_state(dispute, "decide", [DisputeState.ADMIN_REVIEW])
            reasoning = (reasoning or "").strip()
            if len(reasoning) < s.min_reasoning_length:
                raise ValidationError(f"Reasoning must be at least {s.min_reasoning_length} characters")
            if len(reasoning) > s.max_message_length:
                raise ValidationError(f"Reasoning must be at most {s.max_message_length} characters")
            kind = _parse_kind(kind)
            resolved_amount = self._validate_resolution(
                dispute, kind, _parse_amount(amount, "Refund amount")
            )
            self._require_no_active_disbursement(dispute)

            effects = _Effects(now=self.clock())
            dispute.admin_reviewed_by = caller.user_id
            dispute.admin_reviewed_at = effects.now
            dispute.admin_reasoning = reasoning
            self._resolve(dispute, effects, kind, resolved_amount, reasoning)

            terms = kind.value
            if resolved_amount is not None:
                terms += f" ({_money(resolved_amount, dispute.currency)})"
            effects.log(
                dispute,
                caller.user_id,
                SenderRole.ADMIN,
                f"Admin decision: {terms}. Reasoning: {reasoning}",
            )
            if kind is ResolutionKind.REJECTED:
                effects.reputation.append(
                    (dispute.seller_id, s.vindication_reward, "dispute_rejected_seller_vindicated")
                )
            elif kind is not ResolutionKind.MUTUAL_AGREEMENT:
                effects.reputation.append(
                    (dispute.seller_id, s.fault_penalty, "admin_ruled_against_seller")
                )
            effects.emit(
                dispute,
                EventType.DISPUTE_RESOLVED,
                resolution=kind.value,
                amount=str(resolved_amount) if resolved_amount is not None else None,
                decided_by="admin",
                admin_id=caller.user_id,
            )
            committed = self._commit(dispute, effects)

        logger.info("Dispute %s decided by admin %s: %s", dispute_id, caller.user_id, terms)
        self._after_commit(effects)
        return committed

    def close_dispute(self, caller: Caller, dispute_id: str, note: str | None = None) -> Dispute:
        """Admin archives a resolved dispute whose refund will not be retried."""
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            authorize(caller, Operation.CLOSE_DISPUTE, dispute=dispute)
            self._require_state(dispute, "close", [DisputeState.RESOLVED])
            latest = self.ledger.latest(dispute_id)
            if latest is not None and latest.state == DisbursementState.PENDING:
                raise InvalidTransition(
                    "A refund is still in progress; wait for its outcome or let it fail first",
                    current_state=dispute.state.value,
                )

            effects = _Effects(now=self.clock())
            dispute.state = DisputeState.CLOSED
            dispute.closed_at = effects.now
            message = "Dispute closed by admin."
            if note and note.strip():
                message += f" {note.strip()}"
            effects.log(dispute, caller.user_id, SenderRole.ADMIN, message)
            committed = self._commit(dispute, effects)

        logger.info("Dispute %s closed by admin %s", dispute_id, caller.user_id)
        return committed

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def dispatch(self, idempotency_key: str) -> DisbursementRequest:
        """Hand one Pending refund to the gateway; a refusal counts as a failed outcome."""
        try:
            return self.dispatcher.dispatch(idempotency_key)
        except DisbursementRejected as exc:
            logger.warning("Disbursement %s rejected by gateway: %s", idempotency_key, exc)
            return self.record_disbursement_outcome(
                idempotency_key, DisbursementState.FAILED, failure_reason=str(exc)
            )

    def dispatch_due(self, now: datetime | None = None) -> int:
        """Retry refunds that could not reach the gateway earlier."""
        due = self.ledger.due_for_dispatch(now or self.clock())
        for request in due:
            self._dispatch_safely(request.idempotency_key)
        return len(due)

    def record_disbursement_outcome(
        self,
        idempotency_key: str,
        outcome: DisbursementState | str,
        external_reference: str | None = None,
        failure_reason: str | None = None,
    ) -> DisbursementRequest:
        """Apply the gateway's terminal outcome for one refund attempt.

        Safe under duplicate delivery: a repeated callback returns the
        recorded request and changes nothing.
        """
        try:
            outcome = DisbursementState(outcome)
        except ValueError as exc:
            raise ValidationError(f"Unrecognized disbursement outcome: {outcome!r}") from exc
        if outcome is DisbursementState.PENDING:
            raise ValidationError("Outcome must be 'settled' or 'failed'")

        request = self.ledger.get(idempotency_key)
        dispute_id = request.dispute_id
        try:
            with self.store.locked(dispute_id):
                dispute = self.store.get(dispute_id)
                current = self.ledger.get(idempotency_key)
                if current.state != DisbursementState.PENDING:
                    raise DuplicateRequest(
                        f"Outcome for {idempotency_key} already recorded", original=current
                    )
                self._require_state(dispute, "record a refund outcome for", [DisputeState.RESOLVED])

                effects = _Effects(now=self.clock())
                money = _money(current.amount, current.currency)
                if outcome is DisbursementState.SETTLED:
                    updated = self.ledger.record_outcome(
                        idempotency_key, outcome, effects.now, external_reference=external_reference
                    )
                    dispute.refund_status = DisbursementState.SETTLED
                    dispute.refund_reference = updated.external_reference
                    dispute.state = DisputeState.CLOSED
                    dispute.closed_at = effects.now
                    effects.log(
                        dispute,
                        SYSTEM_CALLER_ID,
                        SenderRole.SYSTEM,
                        f"Refund of {money} settled (reference {updated.external_reference or 'n/a'}). "
                        "Dispute closed.",
                    )
                    effects.emit(
                        dispute,
                        EventType.REFUND_SETTLED,
                        idempotency_key=idempotency_key,
                        amount=str(updated.amount),
                        external_reference=updated.external_reference,
                    )
                else:
                    updated = self.ledger.record_outcome(
                        idempotency_key,
                        outcome,
                        effects.now,
                        external_reference=external_reference,
                        failure_reason=failure_reason,
                    )
                    dispute.refund_status = DisbursementState.FAILED
                    effects.log(
                        dispute,
                        SYSTEM_CALLER_ID,
                        SenderRole.SYSTEM,
                        f"Refund attempt {updated.attempt} of {money} failed: {updated.failure_reason}",
                    )
                    effects.emit(
                        dispute,
                        EventType.REFUND_FAILED,
                        idempotency_key=idempotency_key,
                        attempt=updated.attempt,
                        reason=updated.failure_reason,
                    )
                    if updated.attempt < self.settings.disbursement_max_attempts:
                        effects.disbursement = (
                            self._refund_recipient(dispute, fallback=updated.recipient),
                            updated.amount,
                        )
                        dispute.refund_status = DisbursementState.PENDING
                        effects.log(
                            dispute,
                            SYSTEM_CALLER_ID,
                            SenderRole.SYSTEM,
                            f"Retrying refund (attempt {updated.attempt + 1}).",
                        )
                self._commit(dispute, effects)
        except DuplicateRequest as exc:
            logger.info("Duplicate disbursement callback for %s ignored", idempotency_key)
            return exc.original

        if (
            outcome is DisbursementState.FAILED
            and updated.attempt >= self.settings.disbursement_max_attempts
        ):
            self.alerts.raise_alert(
                AlertKind.DISBURSEMENT_FAILED,
                f"Refund of {money} failed after {updated.attempt} attempts "
                f"(last reason: {updated.failure_reason}); manual intervention required",
                dispute_id=dispute_id,
            )
        logger.info("Disbursement %s recorded as %s", idempotency_key, outcome.value)
        self._after_commit(effects)
        return updated

    def retry_disbursement(self, caller: Caller, dispute_id: str) -> DisbursementRequest:
        """Admin manually restarts a refund after failures or an unreachable gateway."""
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            authorize(caller, Operation.RETRY_DISBURSEMENT, dispute=dispute)
            self._require_state(dispute, "retry the refund for", [DisputeState.RESOLVED])
            latest = self.ledger.latest(dispute_id)
            if latest is None:
                raise InvalidTransition(
                    "This dispute has no refund to retry", current_state=dispute.state.value
                )

            effects = _Effects(now=self.clock())
            if latest.state == DisbursementState.FAILED:
                effects.disbursement = (
                    self._refund_recipient(dispute, fallback=latest.recipient),
                    latest.amount,
                )
                dispute.refund_status = DisbursementState.PENDING
                effects.log(
                    dispute,
                    caller.user_id,
                    SenderRole.ADMIN,
                    f"Admin retried refund (attempt {latest.attempt + 1}).",
                )
                self._commit(dispute, effects)
                retried_key = effects.dispatch_keys[0]
            elif latest.state == DisbursementState.PENDING and latest.dispatch_abandoned:
                self.dispatcher.reset(latest.idempotency_key)
                effects.log(
                    dispute,
                    caller.user_id,
                    SenderRole.ADMIN,
                    f"Admin re-sent refund attempt {latest.attempt} to the gateway.",
                )
                self._commit(dispute, effects)
                effects.dispatch_keys.append(latest.idempotency_key)
                retried_key = latest.idempotency_key
            else:
                raise InvalidTransition(
                    f"Refund is {latest.state.value} and cannot be retried",
                    current_state=dispute.state.value,
                )

        logger.info("Dispute %s: admin %s retried refund %s", dispute_id, caller.user_id, retried_key)
        self._after_commit(effects)
        return self.ledger.get(retried_key)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append_message(
        self,
        caller: Caller,
        dispute_id: str,
        text: str,
        evidence: EvidenceInput | None = None,
    ) -> TimelineEntry:
        s = self.settings
        with self.store.locked(dispute_id):
            dispute = self.store.get(dispute_id)
            role = authorize(caller, Operation.APPEND_MESSAGE, dispute=dispute)
            if dispute.state is DisputeState.CLOSED:
                raise InvalidTransition(
                    "This dispute is closed; no further messages can be added",
                    current_state=dispute.state.value,
                )
            text = (text or "").strip()
            if not text:
                raise ValidationError("Message must not be empty")
            if len(text) > s.max_message_length:
                raise ValidationError(f"Message must be at most {s.max_message_length} characters")
            items = [evidence] if evidence is not None else []
            validate_submission(items, max_items=1, settings=s)

            effects = _Effects(now=self.clock())
            refs = record_references(items, uploaded_by=caller.user_id, uploaded_at=effects.now)
            effects.log(dispute, caller.user_id, role, text, evidence=refs[0] if refs else None)
            self._commit(dispute, effects)

        return self.timeline.list_entries(dispute_id)[-1]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_dispute(self, caller: Caller, dispute_id: str) -> DisputeDetail:
        dispute = self.store.get(dispute_id)
        authorize(caller, Operation.GET_DISPUTE, dispute=dispute)
        return DisputeDetail(
            dispute=dispute,
            timeline=self.timeline.list_entries(dispute_id),
            disbursements=self.ledger.for_dispute(dispute_id),
        )

    def list_timeline(
        self, caller: Caller, dispute_id: str, limit: int | None = None, offset: int = 0
    ) -> list[TimelineEntry]:
        dispute = self.store.get(dispute_id)
        authorize(caller, Operation.GET_DISPUTE, dispute=dispute)
        limit, offset = self._page(limit, offset)
        return self.timeline.list_entries(dispute_id, limit=limit, offset=offset)

    def list_disputes_for_buyer(
        self, caller: Caller, buyer_id: str, limit: int | None = None, offset: int = 0
    ) -> DisputePage:
        authorize(caller, Operation.LIST_FOR_BUYER, subject_id=buyer_id)
        limit, offset = self._page(limit, offset)
        disputes, total = self.store.query(
            lambda d: d.buyer_id == buyer_id, newest_first=True, limit=limit, offset=offset
        )
        return DisputePage(disputes=disputes, total=total, limit=limit, offset=offset)

    def list_disputes_for_seller(
        self, caller: Caller, seller_id: str, limit: int | None = None, offset: int = 0
    ) -> SellerDisputePage:
        authorize(caller, Operation.LIST_FOR_SELLER, subject_id=seller_id)
        limit, offset = self._page(limit, offset)
        disputes, total = self.store.query(
            lambda d: d.seller_id == seller_id, newest_first=True, limit=limit, offset=offset
        )
        now = self.clock()
        awaiting, _ = self.store.query(
            lambda d: d.seller_id == seller_id and d.state is DisputeState.AWAITING_SELLER_RESPONSE
        )
        urgent = sum(1 for d in awaiting if is_urgent(d, now, self.settings))
        return SellerDisputePage(
            disputes=disputes, total=total, limit=limit, offset=offset, urgent=urgent
        )

    def list_pending_admin_review(
        self, caller: Caller, limit: int | None = None, offset: int = 0
    ) -> DisputePage:
        authorize(caller, Operation.LIST_PENDING_ADMIN_REVIEW)
        limit, offset = self._page(limit, offset)
        disputes, total = self.store.query(
            lambda d: d.state is DisputeState.ADMIN_REVIEW,
            newest_first=False,
            limit=limit,
            offset=offset,
        )
        return DisputePage(disputes=disputes, total=total, limit=limit, offset=offset)

    def get_stats(self, caller: Caller) -> DisputeStats:
        authorize(caller, Operation.VIEW_STATS)
        disputes = self.store.all()
        stats = DisputeStats(total_disputes=len(disputes), total_refunded=self.ledger.total_settled())
        durations: list[float] = []
        for d in disputes:
            if d.state in (DisputeState.AWAITING_SELLER_RESPONSE, DisputeState.IN_NEGOTIATION):
                stats.open += 1
            elif d.state is DisputeState.ADMIN_REVIEW:
                stats.admin_review += 1
            elif d.state is DisputeState.RESOLVED:
                stats.resolved += 1
            else:
                stats.closed += 1
            if d.resolved_at is not None:
                durations.append((d.resolved_at - d.created_at).total_seconds() / 3600)
        if durations:
            stats.average_resolution_hours = round(sum(durations) / len(durations), 2)
        return stats

    def get_reputation(self, caller: Caller, seller_id: str) -> ReputationRecord:
        authorize(caller, Operation.VIEW_REPUTATION, subject_id=seller_id)
        return self.reputation.record(seller_id)

    def list_alerts(
        self, caller: Caller, limit: int | None = None, offset: int = 0
    ) -> list[OperatorAlert]:
        authorize(caller, Operation.VIEW_ALERTS)
        limit, offset = self._page(limit, offset)
        return self.alerts.list_alerts(limit=limit, offset=offset)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_engine(
    settings: DisputeSettings | None = None,
    executor: Executor | None = None,
) -> DisputeEngine:
    """Assemble an engine from settings.

    Uses the HTTP gateway when ``gateway_url`` is configured and the
    simulated one otherwise; subscribes the webhook notifier when
    ``notify_webhook_url`` is set.
    """
    settings = settings or default_settings
    gateway: DisbursementGateway
    if settings.gateway_url:
        gateway = HttpDisbursementGateway(
            settings.gateway_url,
            api_key=settings.gateway_api_key,
            timeout=settings.downstream_timeout_seconds,
        )
    else:
        logger.warning("No disbursement gateway configured; refunds are simulated")
        gateway = SimulatedDisbursementGateway()

    engine = DisputeEngine(settings=settings, gateway=gateway, executor=executor)
    if settings.notify_webhook_url:
        engine.events.subscribe(
            WebhookNotifier(settings.notify_webhook_url, timeout=settings.downstream_timeout_seconds),
            name="webhook",
        )
    return engine
