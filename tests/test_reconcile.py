"""
Batch reconciliation: per-order failures never block the batch.
"""
from datetime import date

import pytest

from factories import make_card, make_order, make_settlement, tiered_card
from reconeasy.config import ReconConfig
from reconeasy.rate_cards import ReturnRecord
from reconeasy.reconcile import (
    REPORT_COLUMNS,
    failures_to_frame,
    group_settlements,
    reconcile_orders,
    reconcile_returns,
    report_to_frame,
)


def _cards():
    return [make_card(), tiered_card()]


class TestReconcileOrders:

    def test_one_missing_card_does_not_block_the_rest(self):
        # Scenario D: 9 good orders + 1 Amazon/Electronics without a rate card
        orders = [make_order(f"ORD-{i}") for i in range(9)]
        orders.append(make_order("ORD-ELEC", category_id="Electronics"))
        settlements = [make_settlement(f"ORD-{i}") for i in range(9)]

        report = reconcile_orders(orders, _cards(), settlements)

        assert len(report.results) == 9
        assert all(r.status == "matched" for r in report.results)
        assert len(report.failures) == 1
        assert report.failures[0].order_id == "ORD-ELEC"
        assert report.failures[0].reason == "no_active_rate_card"
        s = report.summary
        assert s["total"] == 10
        assert s["matched"] == 9
        assert s["failed"] == 1
        assert s["failure_reasons"] == {"no_active_rate_card": 1}

    def test_mixed_statuses(self):
        orders = [
            make_order("A"),
            make_order("B"),
            make_order("C"),
            make_order("D", platform_id="Flipkart", category_id="Apparel", selling_price=500),
        ]
        settlements = [make_settlement("A"), make_settlement("B", 700), make_settlement("D", 424.2)]
        report = reconcile_orders(orders, _cards(), settlements)

        by_id = {r.order_id: r for r in report.results}
        assert by_id["A"].status == "matched"
        assert by_id["B"].status == "mismatch"
        assert by_id["C"].status == "unsettled"
        assert by_id["D"].status == "matched"
        assert by_id["D"].slab == "500-open: 12%"
        assert report.summary["total_delta"] == pytest.approx(65.8)

    def test_results_do_not_depend_on_batch_composition(self):
        cards = _cards()
        alone = reconcile_orders([make_order("A")], cards, [make_settlement("A", 760)])
        mixed = reconcile_orders(
            [make_order("Z", category_id="Nope"), make_order("A"), make_order("B")],
            cards,
            [make_settlement("B", 1), make_settlement("A", 760)],
        )
        a_mixed = next(r for r in mixed.results if r.order_id == "A")
        assert a_mixed == alone.results[0]

    def test_ambiguous_and_bad_slab_reported(self):
        cards = [
            make_card(id="one"),
            make_card(id="two", effective_from=date(2025, 3, 1)),
            tiered_card(slabs=[{"min_price": 0, "max_price": 100, "commission_percent": 5}]),
        ]
        orders = [
            make_order("AMB"),
            make_order("SLAB", platform_id="Flipkart", category_id="Apparel", selling_price=300),
        ]
        report = reconcile_orders(orders, cards)
        assert {f.order_id: f.reason for f in report.failures} == {
            "AMB": "ambiguous_rate_card",
            "SLAB": "no_matching_slab",
        }
        assert report.results == []

    def test_tolerance_from_config(self):
        report = reconcile_orders(
            [make_order("A")], _cards(), [make_settlement("A", 765)], ReconConfig(tolerance=0.5),
        )
        assert report.results[0].mismatch is True

    def test_split_settlements_are_summed(self):
        settlements = [
            make_settlement("A", 500, payout_date=date(2025, 3, 15), utr_number="UTR1"),
            make_settlement("A", 265.8, payout_date=date(2025, 3, 20), utr_number="UTR2"),
        ]
        grouped = group_settlements(settlements)
        assert grouped["A"].actual_amount == pytest.approx(765.8)
        assert grouped["A"].payout_date == date(2025, 3, 20)
        assert grouped["A"].utr_number == "UTR1,UTR2"

        report = reconcile_orders([make_order("A")], _cards(), settlements)
        assert report.results[0].status == "matched"

    def test_late_payout_flagged(self):
        card = make_card(settlement_basis="t_plus", t_plus_days=7)
        report = reconcile_orders(
            [make_order("A"), make_order("B")],
            [card],
            [
                make_settlement("A", payout_date=date(2025, 3, 17)),
                make_settlement("B", payout_date=date(2025, 3, 18)),
            ],
        )
        late = {r.order_id: r.late for r in report.results}
        assert late == {"A": False, "B": True}
        assert report.summary["late"] == 1


class TestReconcileReturns:

    def test_expected_vs_actual_refund(self):
        orders = [make_order("A"), make_order("B")]
        returns = [
            ReturnRecord(return_id="R1", order_id="A", refund_amount=765.8, reason="Size too big"),
            ReturnRecord(return_id="R2", order_id="B", refund_amount=None),
            ReturnRecord(return_id="R3", order_id="MISSING"),
        ]
        results, failures = reconcile_returns(returns, orders, _cards(), [make_settlement("B", 700)])

        by_id = {r.return_id: r for r in results}
        assert by_id["R1"].mismatch is False
        assert by_id["R1"].reason == "Size too big"
        assert by_id["R2"].actual_refund == 700
        assert by_id["R2"].discrepancy == pytest.approx(65.8)
        assert by_id["R2"].mismatch is True
        assert by_id["R2"].status == "pending"
        assert [(f.return_id, f.reason) for f in failures] == [("R3", "order_not_found")]

    def test_return_without_rate_card(self):
        orders = [make_order("A", platform_id="Ajio")]
        results, failures = reconcile_returns([ReturnRecord(return_id="R1", order_id="A")], orders, _cards())
        assert results == []
        assert failures[0].reason == "no_active_rate_card"
        assert failures[0].to_dict()["return_id"] == "R1"


class TestExport:

    def test_report_frame(self):
        report = reconcile_orders(
            [make_order("A"), make_order("X", category_id="Nope")], _cards(), [make_settlement("A")],
        )
        df = report_to_frame(report)
        assert list(df.columns) == REPORT_COLUMNS + ["fee_shipping"]
        assert df.loc[0, "expected_payout"] == pytest.approx(765.8)
        assert df.loc[0, "fee_shipping"] == 40

        fails = failures_to_frame(report)
        assert fails.to_dict(orient="records") == [
            {"order_id": "X", "reason": "no_active_rate_card", "message": fails.loc[0, "message"]},
        ]

    def test_empty_report_frame(self):
        df = report_to_frame(reconcile_orders([], []))
        assert df.empty
        assert list(df.columns) == REPORT_COLUMNS
