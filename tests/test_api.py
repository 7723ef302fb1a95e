"""Tests for the HTTP surface."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from marketplace_disputes.alerts import AlertKind
from marketplace_disputes.api import create_app
from marketplace_disputes.config import DisputeSettings
from marketplace_disputes.engine import DisputeEngine
from marketplace_disputes.scheduler import DeadlineScheduler

BUYER = {"X-Caller-Id": "buyer-1"}
SELLER = {"X-Caller-Id": "seller-1"}
ADMIN = {"X-Caller-Id": "admin-1", "X-Caller-Admin": "true"}
REASONING = "Courier confirmed the parcel was lost in transit and never delivered."


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _open_body(**overrides):
    body = {
        "order_id": "order-1",
        "seller_id": "seller-1",
        "category": "product_not_received",
        "title": "Parcel never arrived",
        "description": "Tracking shows delivered but nothing was left at my door.",
        "amount": "2000",
        "evidence": [
            {"locator": "s3://evidence/parcel.jpg", "media_type": "image/jpeg", "size_bytes": 1024}
        ],
        "payout_identifier": "254712345678",
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def api_engine(clock):
    return DisputeEngine(settings=DisputeSettings(callback_secret=""), clock=clock)


@pytest.fixture
def client(api_engine):
    return TestClient(create_app(api_engine, DeadlineScheduler(api_engine)))


@pytest.fixture
def opened(client):
    resp = client.post("/disputes", json=_open_body(), headers=BUYER)
    assert resp.status_code == 201
    return resp.json()["dispute_id"]


@pytest.fixture
def in_review(client, opened):
    client.post(
        f"/disputes/{opened}/response",
        json={"text": "I shipped it on time, here is the courier receipt."},
        headers=SELLER,
    )
    resp = client.post(f"/disputes/{opened}/escalate", json={"reason": "No refund"}, headers=BUYER)
    assert resp.json()["state"] == "admin_review"
    return opened


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "marketplace-disputes"

    def test_scheduler_status(self, client):
        data = client.get("/scheduler/status").json()
        assert data["running"] is False
        assert "interval_seconds" in data


class TestDisputeRoutes:
    def test_open_and_fetch(self, client, opened):
        resp = client.get(f"/disputes/{opened}", headers=BUYER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["dispute"]["state"] == "awaiting_seller_response"
        assert data["dispute"]["amount"] == "2000"
        assert len(data["timeline"]) == 1

    def test_missing_caller_header(self, client):
        resp = client.post("/disputes", json=_open_body())
        assert resp.status_code == 401

    def test_validation_error_is_422(self, client):
        resp = client.post("/disputes", json=_open_body(description="too short"), headers=BUYER)
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    def test_invalid_transition_is_409(self, client, opened):
        resp = client.post(f"/disputes/{opened}/escalate", json={}, headers=BUYER)
        assert resp.status_code == 409
        assert resp.json()["current_state"] == "awaiting_seller_response"

    def test_authorization_error_is_403(self, client, opened):
        resp = client.post(
            f"/disputes/{opened}/response",
            json={"text": "I shipped it on time, here is the courier receipt."},
            headers=BUYER,
        )
        assert resp.status_code == 403

    def test_unknown_dispute_is_404(self, client):
        assert client.get("/disputes/nope", headers=BUYER).status_code == 404

    def test_proposals_and_accept(self, client, opened):
        client.post(
            f"/disputes/{opened}/response",
            json={"text": "I shipped it on time, here is the courier receipt."},
            headers=SELLER,
        )
        resp = client.post(
            f"/disputes/{opened}/proposals", json={"kind": "partial_refund", "amount": "800"}, headers=SELLER
        )
        assert resp.json()["state"] == "in_negotiation"

        resp = client.post(f"/disputes/{opened}/proposals/accept", headers=BUYER)
        data = resp.json()
        assert data["state"] == "resolved"
        assert data["resolution_amount"] == "800"

    def test_messages_and_timeline(self, client, opened):
        resp = client.post(f"/disputes/{opened}/messages", json={"text": "Any news?"}, headers=BUYER)
        assert resp.status_code == 201
        assert resp.json()["sender_role"] == "buyer"

        entries = client.get(f"/disputes/{opened}/timeline", headers=SELLER).json()["entries"]
        assert [e["sequence"] for e in entries] == [0, 1]

    def test_listings(self, client, opened, in_review):
        buyer_page = client.get("/buyers/buyer-1/disputes", headers=BUYER).json()
        assert buyer_page["total"] == 1

        seller_page = client.get("/sellers/seller-1/disputes", headers=SELLER).json()
        assert seller_page["urgent"] == 0

        pending = client.get("/admin/disputes/pending", headers=ADMIN).json()
        assert [d["dispute_id"] for d in pending["disputes"]] == [in_review]
        assert client.get("/admin/disputes/pending", headers=BUYER).status_code == 403

    def test_reputation(self, client, opened):
        data = client.get("/sellers/seller-1/reputation", headers=SELLER).json()
        assert data["score"] == "95"


class TestDecisionAndCallback:
    def test_full_refund_flow(self, client, in_review):
        resp = client.post(
            f"/disputes/{in_review}/decision",
            json={"kind": "full_refund", "reasoning": REASONING},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "resolved"

        body = json.dumps(
            {"idempotency_key": f"{in_review}:1", "outcome": "settled", "external_reference": "MP-1"}
        ).encode()
        resp = client.post(
            "/callbacks/disbursement", content=body, headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "settled"

        # Redelivery returns the recorded outcome.
        again = client.post(
            "/callbacks/disbursement", content=body, headers={"Content-Type": "application/json"}
        )
        assert again.status_code == 200
        assert again.json() == resp.json()

        detail = client.get(f"/disputes/{in_review}", headers=BUYER).json()
        assert detail["dispute"]["state"] == "closed"
        assert len(detail["disbursements"]) == 1

        stats = client.get("/admin/stats", headers=ADMIN).json()
        assert stats["closed"] == 1
        assert stats["total_refunded"] == "2000"

    def test_payout_registered_after_opening(self, client):
        body = _open_body(order_id="order-2")
        del body["payout_identifier"]
        dispute_id = client.post("/disputes", json=body, headers=BUYER).json()["dispute_id"]
        client.post(
            f"/disputes/{dispute_id}/response",
            json={"text": "I shipped it on time, here is the courier receipt."},
            headers=SELLER,
        )
        client.post(f"/disputes/{dispute_id}/escalate", json={}, headers=BUYER)
        decision = {"kind": "full_refund", "reasoning": REASONING}

        early = client.post(f"/disputes/{dispute_id}/decision", json=decision, headers=ADMIN)
        assert early.status_code == 422

        assert (
            client.put(
                f"/disputes/{dispute_id}/payout", json={"payout_identifier": "254712345678"}, headers=SELLER
            ).status_code
            == 403
        )
        resp = client.put(
            f"/disputes/{dispute_id}/payout", json={"payout_identifier": "254712345678"}, headers=BUYER
        )
        assert resp.status_code == 200

        resp = client.post(f"/disputes/{dispute_id}/decision", json=decision, headers=ADMIN)
        assert resp.json()["state"] == "resolved"
        assert resp.json()["refund_status"] == "pending"

        body = json.dumps({"idempotency_key": f"{dispute_id}:1", "outcome": "settled"}).encode()
        settled = client.post(
            "/callbacks/disbursement", content=body, headers={"Content-Type": "application/json"}
        )
        assert settled.json()["recipient"] == "254712345678"
        detail = client.get(f"/disputes/{dispute_id}", headers=BUYER).json()
        assert detail["dispute"]["state"] == "closed"

    def test_callback_signature_enforced(self, client, api_engine, in_review):
        api_engine.settings.callback_secret = "gw-secret"
        client.post(
            f"/disputes/{in_review}/decision",
            json={"kind": "full_refund", "reasoning": REASONING},
            headers=ADMIN,
        )
        body = json.dumps({"idempotency_key": f"{in_review}:1", "outcome": "settled"}).encode()

        bad = client.post(
            "/callbacks/disbursement",
            content=body,
            headers={"Content-Type": "application/json", "X-Disbursement-Signature": "sha256=bad"},
        )
        assert bad.status_code == 401

        good = client.post(
            "/callbacks/disbursement",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Disbursement-Signature": _sign(body, "gw-secret"),
            },
        )
        assert good.status_code == 200

    def test_malformed_callback(self, client):
        resp = client.post(
            "/callbacks/disbursement", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400

    def test_retry_and_close_are_admin_only(self, client, in_review):
        client.post(
            f"/disputes/{in_review}/decision",
            json={"kind": "rejected", "reasoning": REASONING},
            headers=ADMIN,
        )
        assert client.post(f"/disputes/{in_review}/close", json={}, headers=BUYER).status_code == 403
        assert client.post(f"/disputes/{in_review}/disbursement/retry", headers=ADMIN).status_code == 409
        resp = client.post(f"/disputes/{in_review}/close", json={"note": "done"}, headers=ADMIN)
        assert resp.json()["state"] == "closed"

    def test_alerts_listing(self, client, api_engine):
        api_engine.alerts.raise_alert(AlertKind.DISBURSEMENT_FAILED, "manual check", dispute_id="d1")
        data = client.get("/alerts", headers=ADMIN).json()
        assert data["total"] == 1
        assert data["alerts"][0]["kind"] == "disbursement_failed"
        assert client.get("/alerts", headers=SELLER).status_code == 403

    def test_alerts_bad_paging(self, client):
        assert client.get("/alerts?limit=-1", headers=ADMIN).status_code == 422
        assert client.get("/alerts?offset=-5", headers=ADMIN).status_code == 422


class TestBodyLimit:
    def test_oversized_body_rejected(self, client):
        resp = client.post(
            "/disputes",
            content=b"x" * (1024 * 1024 + 1),
            headers={**BUYER, "Content-Type": "application/json"},
        )
        assert resp.status_code == 413
