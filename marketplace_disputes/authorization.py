"""Central role checks for every caller-facing operation.

Each operation declares the relationship the caller must have with the
dispute (or with the listing subject).  ``authorize`` is the single place
that enforces it and returns the role the caller acts under.
"""

from __future__ import annotations

import logging
from enum import Enum

from marketplace_disputes.errors import AuthorizationError
from marketplace_disputes.schemas import Caller, Dispute, SenderRole

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    OPEN_DISPUTE = "open_dispute"
    SELLER_RESPOND = "seller_respond"
    PROPOSE_AGREEMENT = "propose_agreement"
    ESCALATE = "escalate"
    ADMIN_DECIDE = "admin_decide"
    APPEND_MESSAGE = "append_message"
    GET_DISPUTE = "get_dispute"
    LIST_FOR_BUYER = "list_disputes_for_buyer"
    LIST_FOR_SELLER = "list_disputes_for_seller"
    LIST_PENDING_ADMIN_REVIEW = "list_pending_admin_review"
    RETRY_DISBURSEMENT = "retry_disbursement"
    CLOSE_DISPUTE = "close_dispute"
    VIEW_STATS = "view_stats"
    VIEW_ALERTS = "view_alerts"
    VIEW_REPUTATION = "view_reputation"
    REGISTER_PAYOUT = "register_payout_identifier"


class Requirement(str, Enum):
    AUTHENTICATED = "authenticated"
    BUYER = "buyer"
    SELLER = "seller"
    PARTY = "party"
    PARTICIPANT = "participant"
    ADMIN = "admin"
    SUBJECT_OR_ADMIN = "subject_or_admin"


OPERATION_REQUIREMENTS: dict[Operation, Requirement] = {
    Operation.OPEN_DISPUTE: Requirement.AUTHENTICATED,
    Operation.SELLER_RESPOND: Requirement.SELLER,
    Operation.PROPOSE_AGREEMENT: Requirement.PARTY,
    Operation.ESCALATE: Requirement.PARTY,
    Operation.ADMIN_DECIDE: Requirement.ADMIN,
    Operation.APPEND_MESSAGE: Requirement.PARTICIPANT,
    Operation.GET_DISPUTE: Requirement.PARTICIPANT,
    Operation.LIST_FOR_BUYER: Requirement.SUBJECT_OR_ADMIN,
    Operation.LIST_FOR_SELLER: Requirement.SUBJECT_OR_ADMIN,
    Operation.LIST_PENDING_ADMIN_REVIEW: Requirement.ADMIN,
    Operation.RETRY_DISBURSEMENT: Requirement.ADMIN,
    Operation.CLOSE_DISPUTE: Requirement.ADMIN,
    Operation.VIEW_STATS: Requirement.ADMIN,
    Operation.VIEW_ALERTS: Requirement.ADMIN,
    Operation.VIEW_REPUTATION: Requirement.SUBJECT_OR_ADMIN,
    Operation.REGISTER_PAYOUT: Requirement.BUYER,
}


def _deny(caller: Caller, operation: Operation, target: str, why: str) -> AuthorizationError:
    logger.warning(
        "SECURITY: caller %s denied %s on %s (%s)",
        caller.user_id,
        operation.value,
        target,
        why,
    )
    return AuthorizationError(f"Not allowed: {why}")


def authorize(
    caller: Caller,
    operation: Operation,
    *,
    dispute: Dispute | None = None,
    subject_id: str | None = None,
) -> SenderRole:
    """Check *caller* may perform *operation*; return the role it acts as.

    Raises AuthorizationError (and logs it for audit) otherwise.
    """
    requirement = OPERATION_REQUIREMENTS[operation]
    target = dispute.dispute_id if dispute is not None else (subject_id or "-")

    if requirement is Requirement.AUTHENTICATED:
        return SenderRole.BUYER

    if requirement is Requirement.ADMIN:
        if caller.is_admin:
            return SenderRole.ADMIN
        raise _deny(caller, operation, target, "admin capability required")

    if requirement is Requirement.SUBJECT_OR_ADMIN:
        if subject_id is not None and caller.user_id == subject_id:
            if operation is Operation.LIST_FOR_BUYER:
                return SenderRole.BUYER
            return SenderRole.SELLER
        if caller.is_admin:
            return SenderRole.ADMIN
        raise _deny(caller, operation, target, "you can only view your own disputes")

    if dispute is None:
        raise ValueError(f"{operation.value} requires a dispute to authorize against")

    party = dispute.party_role(caller.user_id)

    if requirement is Requirement.BUYER:
        if party is SenderRole.BUYER:
            return party
        raise _deny(caller, operation, target, "only the dispute's buyer can do this")

    if requirement is Requirement.SELLER:
        if party is SenderRole.SELLER:
            return party
        raise _deny(caller, operation, target, "only the dispute's seller can respond")

    if requirement is Requirement.PARTY:
        if party is not None:
            return party
        raise _deny(caller, operation, target, "only the buyer or seller of this dispute can do this")

    # PARTICIPANT
    if party is not None:
        return party
    if caller.is_admin:
        return SenderRole.ADMIN
    raise _deny(caller, operation, target, "this dispute does not belong to you")
