# reconeasy/reconcile.py
# Batch reconciliation: every order independently, failures collected

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

import pandas as pd

from reconeasy.calculator import ReconciliationResult, classify, compute_expected_payout
from reconeasy.config import ReconConfig
from reconeasy.errors import ReconError
from reconeasy.rate_cards import Order, RateCard, ReturnRecord, Settlement
from reconeasy.resolver import resolve
from reconeasy.settlement_cycle import expected_settlement_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconFailure:
    order_id: str
    reason: str
    message: str
    return_id: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"order_id": self.order_id, "reason": self.reason, "message": self.message}
        if self.return_id is not None:
            out["return_id"] = self.return_id
        return out


@dataclass
class BatchReport:
    results: List[ReconciliationResult] = field(default_factory=list)
    failures: List[ReconFailure] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        statuses = Counter(r.status for r in self.results)
        settled = [r.delta for r in self.results if r.delta is not None]
        return {
            "total": len(self.results) + len(self.failures),
            "matched": statuses["matched"],
            "mismatched": statuses["mismatch"],
            "unsettled": statuses["unsettled"],
            "failed": len(self.failures),
            "late": sum(1 for r in self.results if r.late),
            "total_delta": round(sum(settled), 2),
            "failure_reasons": dict(Counter(f.reason for f in self.failures)),
        }

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "results": [r.to_dict() for r in self.results],
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass(frozen=True)
class ReturnReconciliation:
    return_id: str
    order_id: str
    marketplace: Optional[str]
    sku: Optional[str]
    reason: str
    status: str
    expected_refund: float
    actual_refund: Optional[float]
    discrepancy: Optional[float]
    mismatch: bool

    def to_dict(self) -> dict:
        return {
            "return_id": self.return_id,
            "order_id": self.order_id,
            "marketplace": self.marketplace,
            "sku": self.sku,
            "return_reason": self.reason,
            "status": self.status,
            "expected_refund": round(self.expected_refund, 2),
            "actual_refund": None if self.actual_refund is None else round(self.actual_refund, 2),
            "discrepancy": None if self.discrepancy is None else round(self.discrepancy, 2),
            "mismatch": self.mismatch,
        }


def group_settlements(settlements: Iterable[Settlement]) -> Dict[str, Settlement]:
    """
    Marketplaces often pay one order in several transfers (prepaid/postpaid,
    commission and logistics legs). Amounts for the same order_id are summed;
    payout_date is the latest leg, UTRs are joined.
    """
    legs = defaultdict(list)
    for s in settlements:
        legs[s.order_id].append(s)

    out = {}
    for order_id, items in legs.items():
        if len(items) == 1:
            out[order_id] = items[0]
            continue
        fees = Counter()
        for s in items:
            fees.update(s.fees)
        dates = [s.payout_date for s in items if s.payout_date is not None]
        utrs = [s.utr_number for s in items if s.utr_number]
        out[order_id] = Settlement(
            order_id=order_id,
            actual_amount=sum(s.actual_amount for s in items),
            payout_date=max(dates) if dates else None,
            utr_number=",".join(utrs) or None,
            fees=dict(fees),
        )
    return out


def reconcile_order(
    order: Order,
    rate_cards: Iterable[RateCard],
    settlement: Optional[Settlement],
    config: ReconConfig,
) -> ReconciliationResult:
    """Resolve, compute and classify one order. Raises ReconError."""
    res = resolve(rate_cards, order.platform_id, order.category_id, order.order_date, order.selling_price)
    breakdown = compute_expected_payout(order, res.rate_card, res.slab)
    result = classify(
        breakdown,
        settlement.actual_amount if settlement is not None else None,
        config.tolerance,
        order_id=order.order_id,
        rate_card_id=res.rate_card.id,
        slab=res.slab,
    )
    return replace(
        result,
        expected_settlement_date=expected_settlement_date(res.rate_card, order.order_date),
        payout_date=settlement.payout_date if settlement is not None else None,
        meta={"platform_id": order.platform_id, "category_id": order.category_id, "sku": order.sku},
    )


def reconcile_orders(
    orders: Iterable[Order],
    rate_cards: Iterable[RateCard],
    settlements: Iterable[Settlement] = (),
    config: Optional[ReconConfig] = None,
) -> BatchReport:
    config = config or ReconConfig()
    cards = list(rate_cards)
    by_order = group_settlements(settlements)

    report = BatchReport()
    for order in orders:
        try:
            result = reconcile_order(order, cards, by_order.get(order.order_id), config)
        except ReconError as e:
            logger.warning("Order %s skipped (%s): %s", order.order_id, e.code, e.message)
            report.failures.append(ReconFailure(order.order_id, e.code, e.message))
            continue
        report.results.append(result)

    s = report.summary
    logger.info(
        "Reconciled %s orders: %s matched, %s mismatched, %s unsettled, %s failed",
        s["total"], s["matched"], s["mismatched"], s["unsettled"], s["failed"],
    )
    return report


def reconcile_returns(
    returns: Iterable[ReturnRecord],
    orders: Iterable[Order],
    rate_cards: Iterable[RateCard],
    settlements: Iterable[Settlement] = (),
    config: Optional[ReconConfig] = None,
):
    """
    Expected refund for a return is the expected payout of its original order.
    Actual refund comes from the order's settlement, else from the return's
    own refund amount. Returns (results, failures).
    """
    config = config or ReconConfig()
    cards = list(rate_cards)
    orders_by_id = {o.order_id: o for o in orders}
    by_order = group_settlements(settlements)

    results, failures = [], []
    for ret in returns:
        order = orders_by_id.get(ret.order_id)
        if order is None:
            failures.append(ReconFailure(ret.order_id, "order_not_found", "original order not found", ret.return_id))
            continue
        try:
            res = resolve(cards, order.platform_id, order.category_id, order.order_date, order.selling_price)
            breakdown = compute_expected_payout(order, res.rate_card, res.slab)
        except ReconError as e:
            logger.warning("Return %s skipped (%s): %s", ret.return_id, e.code, e.message)
            failures.append(ReconFailure(ret.order_id, e.code, e.message, ret.return_id))
            continue

        settlement = by_order.get(ret.order_id)
        actual = settlement.actual_amount if settlement is not None else ret.refund_amount
        expected = breakdown.expected_payout
        discrepancy = None if actual is None else expected - actual

        results.append(ReturnReconciliation(
            return_id=ret.return_id,
            order_id=ret.order_id,
            marketplace=ret.marketplace or order.platform_id,
            sku=ret.sku or order.sku,
            reason=ret.reason or "Unknown",
            status=ret.status or "pending",
            expected_refund=expected,
            actual_refund=actual,
            discrepancy=discrepancy,
            mismatch=discrepancy is not None and abs(discrepancy) > config.tolerance,
        ))
    return results, failures


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

REPORT_COLUMNS = [
    "order_id", "platform_id", "category_id", "sku", "rate_card_id", "slab", "status",
    "order_price", "commission_percent", "commission", "gst", "tcs",
    "expected_payout", "actual_payout", "delta", "mismatch",
    "expected_settlement_date", "payout_date", "late",
]


def report_to_frame(report: BatchReport) -> pd.DataFrame:
    """One row per reconciled order, fee codes as extra `fee_<code>` columns."""
    rows = []
    for r in report.results:
        d = r.to_dict()
        b = d.pop("breakdown")
        row = {**d, **{k: b[k] for k in ("order_price", "commission_percent", "commission", "gst", "tcs")}}
        for code, amount in b["fees"].items():
            row[f"fee_{code}"] = amount
        rows.append(row)

    df = pd.DataFrame(rows)
    if df.empty:
        return pd.DataFrame(columns=REPORT_COLUMNS)
    fee_cols = sorted(c for c in df.columns if c.startswith("fee_"))
    for c in fee_cols:
        df[c] = df[c].fillna(0.0)
    return df[REPORT_COLUMNS + fee_cols]


def failures_to_frame(report: BatchReport) -> pd.DataFrame:
    return pd.DataFrame(
        [f.to_dict() for f in report.failures],
        columns=["order_id", "reason", "message"],
    )
