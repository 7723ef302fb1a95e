"""Tests for the seller reputation ledger."""

from __future__ import annotations

from decimal import Decimal

import pytest

from marketplace_disputes.reputation import ReputationLedger, clamp_score


class TestClamp:
    @pytest.mark.parametrize(
        "raw, expected",
        [("-40", "0"), ("0", "0"), ("57.5", "57.5"), ("100", "100"), ("250", "100")],
    )
    def test_clamp_score(self, raw, expected):
        assert clamp_score(Decimal(raw)) == Decimal(expected)


class TestReputationLedger:
    def test_unknown_seller_starts_at_initial_score(self):
        ledger = ReputationLedger()
        assert ledger.score("new-seller") == Decimal("100")
        assert ledger.record("new-seller").history == []

    def test_custom_initial_score(self):
        assert ReputationLedger(initial_score=60).score("s") == Decimal("60")

    def test_penalty_and_reward(self):
        ledger = ReputationLedger()
        ledger.apply_delta("s1", Decimal("-5"), "dispute_opened", "d1")
        ledger.apply_delta("s1", Decimal("-15"), "admin_ruled_against_seller", "d1")
        assert ledger.score("s1") == Decimal("80")
        ledger.apply_delta("s1", Decimal("5"), "dispute_rejected_seller_vindicated", "d2")
        assert ledger.score("s1") == Decimal("85")

    def test_clamped_at_zero(self):
        ledger = ReputationLedger(initial_score=10)
        delta = ledger.apply_delta("s1", Decimal("-15"), "admin_ruled_against_seller")
        assert delta.score_before == Decimal("10")
        assert delta.score_after == Decimal("0")
        assert ledger.score("s1") == Decimal("0")

    def test_clamped_at_hundred(self):
        ledger = ReputationLedger()
        delta = ledger.apply_delta("s1", Decimal("5"), "dispute_rejected_seller_vindicated")
        assert delta.amount == Decimal("5")
        assert ledger.score("s1") == Decimal("100")

    def test_huge_deltas_stay_in_range(self):
        ledger = ReputationLedger()
        for amount in ("-1000000", "999999", "-0.5", "-100"):
            ledger.apply_delta("s1", Decimal(amount), "stress")
            assert Decimal("0") <= ledger.score("s1") <= Decimal("100")

    def test_history_is_audit_trail(self):
        ledger = ReputationLedger()
        ledger.apply_delta("s1", -5, "dispute_opened", "d1")
        ledger.apply_delta("s2", -5, "dispute_opened", "d2")
        ledger.apply_delta("s1", 5, "dispute_rejected_seller_vindicated", "d1")

        record = ledger.record("s1")
        assert [d.reason for d in record.history] == [
            "dispute_opened",
            "dispute_rejected_seller_vindicated",
        ]
        assert [d.dispute_id for d in ledger.deltas_for_dispute("d1")] == ["d1", "d1"]

    def test_reads_do_not_mutate(self):
        ledger = ReputationLedger()
        ledger.apply_delta("s1", -5, "dispute_opened")
        record = ledger.record("s1")
        record.history.clear()
        ledger.score("s1")
        ledger.deltas_for_dispute("anything")
        assert len(ledger.record("s1").history) == 1
        assert ledger.score("s1") == Decimal("95")
