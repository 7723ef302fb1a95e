"""Tests for the disbursement ledger, gateway adapters and dispatcher."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest

from marketplace_disputes.alerts import AlertKind, AlertLog
from marketplace_disputes.disbursement import (
    DisbursementDispatcher,
    DisbursementLedger,
    DisbursementRejected,
    HttpDisbursementGateway,
    SimulatedDisbursementGateway,
)
from marketplace_disputes.errors import (
    DisputeNotFound,
    DownstreamUnavailable,
    DuplicateRequest,
    InvalidTransition,
)
from marketplace_disputes.retry import backoff_delay
from marketplace_disputes.schemas import DisbursementState

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _mock_client(status_code=200, payload=None, exc=None):
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_resp.is_success = 200 <= status_code < 300
    mock_resp.json.return_value = payload if payload is not None else {}
    mock_resp.text = "refused"
    mock_ctx = MagicMock()
    mock_ctx.__enter__ = MagicMock(return_value=mock_ctx)
    mock_ctx.__exit__ = MagicMock(return_value=False)
    if exc is not None:
        mock_ctx.post.side_effect = exc
    else:
        mock_ctx.post.return_value = mock_resp
    return mock_ctx


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class TestDisbursementLedger:
    def test_create_first_attempt(self):
        ledger = DisbursementLedger()
        request = ledger.create("d1", "254700000001", Decimal("2000"), "KES", NOW)
        assert request.attempt == 1
        assert request.idempotency_key == "d1:1"
        assert request.state == DisbursementState.PENDING
        assert ledger.latest("d1") == request

    def test_second_attempt_only_after_failure(self):
        ledger = DisbursementLedger()
        ledger.create("d1", "r", Decimal("10"), "KES", NOW)
        with pytest.raises(InvalidTransition):
            ledger.create("d1", "r", Decimal("10"), "KES", NOW)

        ledger.record_outcome("d1:1", DisbursementState.FAILED, NOW, failure_reason="declined")
        second = ledger.create("d1", "r", Decimal("10"), "KES", NOW)
        assert second.idempotency_key == "d1:2"

    def test_no_attempt_after_settlement(self):
        ledger = DisbursementLedger()
        ledger.create("d1", "r", Decimal("10"), "KES", NOW)
        ledger.record_outcome("d1:1", DisbursementState.SETTLED, NOW, external_reference="X")
        with pytest.raises(InvalidTransition):
            ledger.create("d1", "r", Decimal("10"), "KES", NOW)

    def test_duplicate_outcome_carries_original(self):
        ledger = DisbursementLedger()
        ledger.create("d1", "r", Decimal("10"), "KES", NOW)
        settled = ledger.record_outcome("d1:1", DisbursementState.SETTLED, NOW, external_reference="X")

        with pytest.raises(DuplicateRequest) as excinfo:
            ledger.record_outcome("d1:1", DisbursementState.SETTLED, NOW, external_reference="X")
        assert excinfo.value.original == settled
        assert settled.settled_at == NOW

    def test_unknown_key(self):
        with pytest.raises(DisputeNotFound):
            DisbursementLedger().get("missing:1")

    def test_total_settled(self):
        ledger = DisbursementLedger()
        ledger.create("d1", "r", Decimal("100.50"), "KES", NOW)
        ledger.create("d2", "r", Decimal("40"), "KES", NOW)
        ledger.record_outcome("d1:1", DisbursementState.SETTLED, NOW)
        assert ledger.total_settled() == Decimal("100.50")


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


class TestSimulatedGateway:
    def test_same_key_never_transfers_twice(self):
        gateway = SimulatedDisbursementGateway()
        first = gateway.request_disbursement("d1", "r", Decimal("10"), "d1:1", "KES")
        again = gateway.request_disbursement("d1", "r", Decimal("10"), "d1:1", "KES")
        other = gateway.request_disbursement("d1", "r", Decimal("10"), "d1:2", "KES")

        assert first == again
        assert other != first
        assert len(gateway.transfers) == 2

    def test_unavailable(self):
        gateway = SimulatedDisbursementGateway()
        gateway.unavailable = True
        with pytest.raises(DownstreamUnavailable):
            gateway.request_disbursement("d1", "r", Decimal("10"), "d1:1", "KES")
        assert gateway.transfers == {}


class TestHttpGateway:
    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_success_returns_reference(self, mock_client_cls):
        mock_ctx = _mock_client(201, {"reference": "MPESA-123"})
        mock_client_cls.return_value = mock_ctx
        gateway = HttpDisbursementGateway("http://gateway.test/", api_key="k")

        ref = gateway.request_disbursement("d1", "254700000001", Decimal("2000"), "d1:1", "KES")

        assert ref == "MPESA-123"
        url = mock_ctx.post.call_args[0][0]
        kwargs = mock_ctx.post.call_args[1]
        assert url == "http://gateway.test/disbursements"
        assert kwargs["headers"]["Idempotency-Key"] == "d1:1"
        assert kwargs["headers"]["Authorization"] == "Bearer k"
        assert kwargs["json"]["amount"] == "2000"

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_repeated_key_served_locally(self, mock_client_cls):
        mock_ctx = _mock_client(200, {"reference": "MPESA-123"})
        mock_client_cls.return_value = mock_ctx
        gateway = HttpDisbursementGateway("http://gateway.test")

        gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES")
        gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES")

        mock_ctx.post.assert_called_once()

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_conflict_returns_original_transfer(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(409, {"reference": "MPESA-ORIG"})
        gateway = HttpDisbursementGateway("http://gateway.test")
        assert gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES") == "MPESA-ORIG"

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_server_error_is_unavailable(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(503)
        gateway = HttpDisbursementGateway("http://gateway.test")
        with pytest.raises(DownstreamUnavailable):
            gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES")

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_connection_error_is_unavailable(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(exc=httpx.ConnectError("refused"))
        gateway = HttpDisbursementGateway("http://gateway.test")
        with pytest.raises(DownstreamUnavailable):
            gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES")

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_client_error_is_rejection(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(400)
        gateway = HttpDisbursementGateway("http://gateway.test")
        with pytest.raises(DisbursementRejected):
            gateway.request_disbursement("d1", "bad-number", Decimal("1"), "d1:1", "KES")

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_non_json_body_is_unavailable(self, mock_client_cls):
        mock_ctx = _mock_client(200)
        mock_ctx.post.return_value.json.side_effect = ValueError("Expecting value")
        mock_client_cls.return_value = mock_ctx
        gateway = HttpDisbursementGateway("http://gateway.test")
        with pytest.raises(DownstreamUnavailable, match="unreadable response"):
            gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES")

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_non_object_body_is_unavailable(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(409, ["MPESA-ORIG"])
        gateway = HttpDisbursementGateway("http://gateway.test")
        with pytest.raises(DownstreamUnavailable, match="no reference"):
            gateway.request_disbursement("d1", "r", Decimal("1"), "d1:1", "KES")

    @patch("marketplace_disputes.disbursement.httpx.Client")
    def test_garbled_replies_back_off_and_alert(self, mock_client_cls):
        mock_ctx = _mock_client(200)
        mock_ctx.post.return_value.json.side_effect = ValueError("Expecting value")
        mock_client_cls.return_value = mock_ctx
        ledger = DisbursementLedger()
        alerts = AlertLog()
        dispatcher = DisbursementDispatcher(
            HttpDisbursementGateway("http://gateway.test"),
            ledger,
            alerts,
            max_attempts=3,
            backoff_base_seconds=10,
            clock=lambda: NOW,
        )
        ledger.create("d1", "r", Decimal("10"), "KES", NOW)

        first = dispatcher.dispatch("d1:1")
        assert first.dispatch_attempts == 1
        assert ledger.due_for_dispatch(NOW) == []
        dispatcher.dispatch("d1:1")
        third = dispatcher.dispatch("d1:1")

        assert third.dispatch_abandoned
        assert mock_ctx.post.call_count == 3
        assert [a.kind for a in alerts.list_alerts()] == [AlertKind.GATEWAY_UNREACHABLE]


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestDispatcher:
    @pytest.fixture
    def parts(self):
        gateway = SimulatedDisbursementGateway()
        ledger = DisbursementLedger()
        alerts = AlertLog()
        dispatcher = DisbursementDispatcher(
            gateway, ledger, alerts, max_attempts=3, backoff_base_seconds=10, clock=lambda: NOW
        )
        ledger.create("d1", "r", Decimal("10"), "KES", NOW)
        return gateway, ledger, alerts, dispatcher

    def test_dispatch_records_reference(self, parts):
        gateway, ledger, _, dispatcher = parts
        request = dispatcher.dispatch("d1:1")
        assert request.dispatched
        assert request.external_reference == gateway.transfers["d1:1"]["reference"]
        assert request.state == DisbursementState.PENDING

    def test_dispatch_twice_calls_gateway_once(self, parts):
        gateway, _, _, dispatcher = parts
        dispatcher.dispatch("d1:1")
        dispatcher.dispatch("d1:1")
        assert gateway.calls == 1

    def test_backoff_then_abandon_with_alert(self, parts):
        gateway, ledger, alerts, dispatcher = parts
        gateway.unavailable = True

        first = dispatcher.dispatch("d1:1")
        assert first.next_dispatch_at == NOW + timedelta(seconds=10)
        second = dispatcher.dispatch("d1:1")
        assert second.next_dispatch_at == NOW + timedelta(seconds=20)
        third = dispatcher.dispatch("d1:1")

        assert third.dispatch_abandoned
        assert ledger.due_for_dispatch(NOW + timedelta(days=1)) == []
        assert [a.kind for a in alerts.list_alerts()] == [AlertKind.GATEWAY_UNREACHABLE]

    def test_reset_rearms(self, parts):
        gateway, ledger, _, dispatcher = parts
        gateway.unavailable = True
        for _ in range(3):
            dispatcher.dispatch("d1:1")
        gateway.unavailable = False

        dispatcher.reset("d1:1")
        assert dispatcher.dispatch("d1:1").dispatched

    def test_never_overwrites_terminal_state(self, parts):
        _, ledger, _, dispatcher = parts
        ledger.record_outcome("d1:1", DisbursementState.FAILED, NOW, failure_reason="x")
        assert dispatcher.dispatch("d1:1").state == DisbursementState.FAILED


class TestBackoff:
    def test_exponential_and_capped(self):
        assert [backoff_delay(n, 30, 900) for n in range(0, 7)] == [0.0, 30, 60, 120, 240, 480, 900]
