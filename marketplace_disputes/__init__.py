"""Marketplace Disputes: buyer/seller dispute resolution with admin arbitration and refunds."""

from marketplace_disputes.config import DisputeSettings, settings
from marketplace_disputes.disbursement import (
    DisbursementGateway,
    HttpDisbursementGateway,
    PayoutDirectory,
    SimulatedDisbursementGateway,
)
from marketplace_disputes.engine import DisputeEngine, build_engine
from marketplace_disputes.errors import (
    AuthorizationError,
    ConcurrentModification,
    DisputeError,
    DisputeNotFound,
    DownstreamUnavailable,
    DuplicateRequest,
    InvalidTransition,
    ValidationError,
)
from marketplace_disputes.reputation import ReputationLedger
from marketplace_disputes.scheduler import DeadlineScheduler
from marketplace_disputes.schemas import (
    Caller,
    DisbursementRequest,
    DisbursementState,
    Dispute,
    DisputeState,
    EvidenceInput,
    IssueCategory,
    ResolutionKind,
    SenderRole,
    TimelineEntry,
)

__all__ = [
    # Engine
    "DisputeEngine",
    "build_engine",
    "DeadlineScheduler",
    "settings",
    "DisputeSettings",
    # Collaborators
    "ReputationLedger",
    "DisbursementGateway",
    "HttpDisbursementGateway",
    "SimulatedDisbursementGateway",
    "PayoutDirectory",
    # Models
    "Caller",
    "Dispute",
    "DisputeState",
    "ResolutionKind",
    "IssueCategory",
    "SenderRole",
    "EvidenceInput",
    "TimelineEntry",
    "DisbursementRequest",
    "DisbursementState",
    # Errors
    "DisputeError",
    "ValidationError",
    "InvalidTransition",
    "ConcurrentModification",
    "AuthorizationError",
    "DisputeNotFound",
    "DownstreamUnavailable",
    "DuplicateRequest",
]

__version__ = "0.1.0"
