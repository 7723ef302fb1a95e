"""Shared fixtures: a controllable clock and an engine wired to in-memory collaborators."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace_disputes.config import DisputeSettings
from marketplace_disputes.disbursement import SimulatedDisbursementGateway
from marketplace_disputes.engine import DisputeEngine
from marketplace_disputes.schemas import Caller, EvidenceInput

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
BUYER_PHONE = "254712345678"


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def photo(name: str = "parcel.jpg", size: int = 250_000) -> EvidenceInput:
    return EvidenceInput(locator=f"s3://evidence/{name}", media_type="image/jpeg", size_bytes=size)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispute_settings():
    return DisputeSettings()


@pytest.fixture
def gateway():
    return SimulatedDisbursementGateway()


@pytest.fixture
def buyer():
    return Caller(user_id="buyer-1")


@pytest.fixture
def seller():
    return Caller(user_id="seller-1")


@pytest.fixture
def admin():
    return Caller(user_id="admin-1", is_admin=True)


@pytest.fixture
def stranger():
    return Caller(user_id="someone-else")


@pytest.fixture
def engine(clock, dispute_settings, gateway, buyer):
    eng = DisputeEngine(settings=dispute_settings, gateway=gateway, clock=clock)
    eng.payouts.register(buyer.user_id, BUYER_PHONE)
    return eng


@pytest.fixture
def open_dispute(engine, buyer, seller):
    """Factory opening a valid dispute; keyword overrides replace the defaults."""
    orders = itertools.count(1)

    def _open(**overrides):
        kwargs = {
            "order_id": f"order-{next(orders)}",
            "seller_id": seller.user_id,
            "category": "product_not_received",
            "title": "Parcel never arrived",
            "description": "Tracking shows delivered but nothing was left at my door.",
            "amount": Decimal("2000"),
            "evidence": [photo()],
        }
        caller = overrides.pop("caller", buyer)
        kwargs.update(overrides)
        return engine.open_dispute(caller, **kwargs)

    return _open


@pytest.fixture
def in_negotiation(engine, open_dispute, seller):
    def _make(**overrides):
        dispute = open_dispute(**overrides)
        return engine.seller_respond(
            seller, dispute.dispute_id, "I shipped it on time, here is the courier receipt."
        )

    return _make


@pytest.fixture
def in_review(engine, in_negotiation, buyer):
    def _make(**overrides):
        dispute = in_negotiation(**overrides)
        return engine.escalate(buyer, dispute.dispute_id, "Seller will not refund")

    return _make


@pytest.fixture
def make_photo():
    return photo
