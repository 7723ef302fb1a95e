"""Pydantic models for disputes, evidence, timeline, reputation and refunds."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DisputeState(str, Enum):
    # "open" is the transient form of this state; the engine never stores it.
    AWAITING_SELLER_RESPONSE = "awaiting_seller_response"
    IN_NEGOTIATION = "in_negotiation"
    ADMIN_REVIEW = "admin_review"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATES


OPEN_STATES = frozenset(
    {
        DisputeState.AWAITING_SELLER_RESPONSE,
        DisputeState.IN_NEGOTIATION,
        DisputeState.ADMIN_REVIEW,
    }
)


class ResolutionKind(str, Enum):
    UNDECIDED = "undecided"
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    REPLACEMENT = "replacement"
    REJECTED = "rejected"
    MUTUAL_AGREEMENT = "mutual_agreement"

    @property
    def implies_refund(self) -> bool:
        return self in (ResolutionKind.FULL_REFUND, ResolutionKind.PARTIAL_REFUND)


class IssueCategory(str, Enum):
    PRODUCT_NOT_RECEIVED = "product_not_received"
    PRODUCT_DAMAGED = "product_damaged"
    PRODUCT_NOT_AS_DESCRIBED = "product_not_as_described"
    SERVICE_NOT_COMPLETED = "service_not_completed"
    QUALITY_ISSUE = "quality_issue"
    SELLER_UNRESPONSIVE = "seller_unresponsive"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"

    @property
    def label(self) -> str:
        return CATEGORY_INFO[self]["label"]

    @property
    def refundable(self) -> bool:
        return CATEGORY_INFO[self]["refundable"]


CATEGORY_INFO: dict[IssueCategory, dict[str, Any]] = {
    IssueCategory.PRODUCT_NOT_RECEIVED: {
        "label": "Product Not Received",
        "description": "Item never arrived after delivery deadline",
        "refundable": True,
    },
    IssueCategory.PRODUCT_DAMAGED: {
        "label": "Product Damaged",
        "description": "Item arrived in damaged or defective condition",
        "refundable": True,
    },
    IssueCategory.PRODUCT_NOT_AS_DESCRIBED: {
        "label": "Not As Described",
        "description": "Product does not match seller's description",
        "refundable": True,
    },
    IssueCategory.SERVICE_NOT_COMPLETED: {
        "label": "Service Not Completed",
        "description": "Service promised by seller was not completed",
        "refundable": True,
    },
    IssueCategory.QUALITY_ISSUE: {
        "label": "Quality Issue",
        "description": "Product quality is below expected standard",
        "refundable": True,
    },
    IssueCategory.SELLER_UNRESPONSIVE: {
        "label": "Seller Unresponsive",
        "description": "Seller not responding to messages or complaints",
        "refundable": True,
    },
    IssueCategory.PAYMENT_ISSUE: {
        "label": "Payment Issue",
        "description": "Charged incorrectly or unwanted charges",
        "refundable": True,
    },
    IssueCategory.OTHER: {
        "label": "Other Issue",
        "description": "Other dispute reason",
        "refundable": False,
    },
}


class SenderRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class DisbursementState(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


class EventType(str, Enum):
    DISPUTE_OPENED = "DisputeOpened"
    SELLER_RESPONDED = "SellerResponded"
    ESCALATED_TO_ADMIN = "EscalatedToAdmin"
    DISPUTE_RESOLVED = "DisputeResolved"
    REFUND_SETTLED = "RefundSettled"
    REFUND_FAILED = "RefundFailed"


# ---------------------------------------------------------------------------
# Caller identity (trusted from the surrounding application)
# ---------------------------------------------------------------------------


class Caller(BaseModel):
    """An authenticated principal acting on the engine."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    is_admin: bool = False


SYSTEM_CALLER_ID = "system"


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceInput(BaseModel):
    """An already-uploaded file, as handed to the engine by the caller."""

    locator: str
    media_type: str
    size_bytes: int = Field(..., ge=0)


class EvidenceReference(BaseModel):
    """Opaque pointer to proof material stored outside the engine."""

    model_config = ConfigDict(frozen=True)

    reference_id: str = Field(default_factory=new_id)
    locator: str
    media_type: str
    size_bytes: int
    uploaded_by: str
    uploaded_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


class TimelineEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=new_id)
    dispute_id: str
    sequence: int = 0
    sender_id: str
    sender_role: SenderRole
    message: str
    evidence: EvidenceReference | None = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Dispute aggregate
# ---------------------------------------------------------------------------


class Proposal(BaseModel):
    """A party's standing offer to settle during negotiation."""

    model_config = ConfigDict(frozen=True)

    proposed_by: str
    role: SenderRole
    kind: ResolutionKind
    amount: Decimal | None = None
    proposed_at: datetime = Field(default_factory=_utcnow)

    def terms(self) -> tuple[ResolutionKind, Decimal | None]:
        return self.kind, self.amount


class Dispute(BaseModel):
    """Aggregate root for a buyer/seller disagreement over one order."""

    dispute_id: str = Field(default_factory=new_id)
    order_id: str
    buyer_id: str
    seller_id: str
    category: IssueCategory
    title: str
    description: str
    amount: Decimal
    currency: str
    state: DisputeState = DisputeState.AWAITING_SELLER_RESPONSE
    resolution: ResolutionKind = ResolutionKind.UNDECIDED
    resolution_amount: Decimal | None = None
    resolution_details: str | None = None
    evidence: list[EvidenceReference] = Field(default_factory=list)

    seller_response: str | None = None
    seller_responded_at: datetime | None = None
    buyer_proposal: Proposal | None = None
    seller_proposal: Proposal | None = None

    escalated_at: datetime | None = None
    escalation_reason: str | None = None
    admin_reviewed_by: str | None = None
    admin_reviewed_at: datetime | None = None
    admin_reasoning: str | None = None

    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    refund_status: DisbursementState | None = None
    refund_reference: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def party_role(self, user_id: str) -> SenderRole | None:
        if user_id == self.buyer_id:
            return SenderRole.BUYER
        if user_id == self.seller_id:
            return SenderRole.SELLER
        return None


# ---------------------------------------------------------------------------
# Reputation
# ---------------------------------------------------------------------------


class ReputationDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    seller_id: str
    amount: Decimal
    reason: str
    dispute_id: str | None = None
    score_before: Decimal
    score_after: Decimal
    applied_at: datetime = Field(default_factory=_utcnow)


class ReputationRecord(BaseModel):
    seller_id: str
    score: Decimal
    history: list[ReputationDelta] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Disbursement
# ---------------------------------------------------------------------------


def idempotency_key_for(dispute_id: str, attempt: int) -> str:
    return f"{dispute_id}:{attempt}"


class DisbursementRequest(BaseModel):
    """One attempt at returning money to the buyer."""

    request_id: str = Field(default_factory=new_id)
    dispute_id: str
    recipient: str
    amount: Decimal
    currency: str
    attempt: int = 1
    idempotency_key: str
    state: DisbursementState = DisbursementState.PENDING
    external_reference: str | None = None
    failure_reason: str | None = None
    # Gateway hand-off bookkeeping; a request can be Pending but not yet
    # accepted by the gateway when it was unreachable.
    dispatched: bool = False
    dispatch_attempts: int = 0
    next_dispatch_at: datetime | None = None
    dispatch_abandoned: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    settled_at: datetime | None = None


# ---------------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------------


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_id)
    event_type: EventType
    dispute_id: str
    # Version of the dispute the transition committed; orders events per dispute.
    dispute_version: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class DisputePage(BaseModel):
    disputes: list[Dispute]
    total: int
    limit: int
    offset: int


class SellerDisputePage(DisputePage):
    # Disputes still awaiting this seller's response with little time left.
    urgent: int = 0


class DisputeDetail(BaseModel):
    dispute: Dispute
    timeline: list[TimelineEntry]
    disbursements: list[DisbursementRequest] = Field(default_factory=list)


class DisputeStats(BaseModel):
    open: int = 0
    admin_review: int = 0
    resolved: int = 0
    closed: int = 0
    total_disputes: int = 0
    total_refunded: Decimal = Decimal("0")
    average_resolution_hours: float | None = None
