"""Example: Driving a dispute end to end without the HTTP service.

This example shows how to use the engine as a library: a buyer opens a
dispute, the seller answers, the buyer escalates, an admin orders a
partial refund and the (simulated) gateway reports settlement.  Useful
for testing, batch replays, or embedding in custom orchestration.

Usage:
    python examples/programmatic_dispute.py
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal

from marketplace_disputes import Caller, DisputeEngine, EvidenceInput
from marketplace_disputes.scheduler import DeadlineScheduler


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    engine = DisputeEngine()
    buyer = Caller(user_id="buyer-42")
    seller = Caller(user_id="seller-7")
    admin = Caller(user_id="ops-1", is_admin=True)

    # Step 1: Buyer opens the dispute with one photo and a payout number
    dispute = engine.open_dispute(
        buyer,
        order_id="ORD-1001",
        seller_id=seller.user_id,
        category="product_damaged",
        title="Screen cracked on arrival",
        description="The phone arrived with a cracked screen and a dented corner.",
        amount=Decimal("18500"),
        evidence=[
            EvidenceInput(locator="s3://evidence/crack.jpg", media_type="image/jpeg", size_bytes=412_000)
        ],
        payout_identifier="254712345678",
    )
    print("=" * 60)
    print(f"Opened dispute {dispute.dispute_id} ({dispute.state.value})")
    print("=" * 60)

    # Step 2: Seller answers, buyer is not satisfied and escalates
    engine.seller_respond(
        seller, dispute.dispute_id, "Packed with bubble wrap; the courier must have dropped it."
    )
    engine.escalate(buyer, dispute.dispute_id, "Seller will not offer a refund")

    # Step 3: Admin splits the loss
    resolved = engine.admin_decide(
        admin,
        dispute.dispute_id,
        "partial_refund",
        "Packaging was adequate but the courier handoff was unverified; splitting the loss.",
        amount=Decimal("9250"),
    )
    print(f"Resolved: {resolved.resolution.value} {resolved.resolution_amount} {resolved.currency}")

    # Step 4: Gateway reports the transfer settled
    latest = engine.ledger.latest(dispute.dispute_id)
    engine.record_disbursement_outcome(latest.idempotency_key, "settled", external_reference="MP-889211")

    detail = engine.get_dispute(buyer, dispute.dispute_id)
    print(f"\nFinal state: {detail.dispute.state.value}")
    for entry in detail.timeline:
        print(f"  [{entry.sequence}] {entry.sender_role.value:<6} {entry.message}")

    print(f"\nSeller reputation: {engine.get_reputation(seller, seller.user_id).score}")
    print(f"Sweep summary: {json.dumps(DeadlineScheduler(engine).sweep())}")


if __name__ == "__main__":
    main()
