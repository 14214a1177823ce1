# reconeasy/calculator.py
# Expected payout breakdown + expected-vs-actual classification

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Optional

from reconeasy.errors import InvalidInput
from reconeasy.rate_cards import Order, RateCard, RateCardSlab

DEFAULT_TOLERANCE = 1.0


def _finite(name: str, value, allow_negative: bool = False) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if not math.isfinite(f):
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    if f < 0 and not allow_negative:
        raise InvalidInput(f"{name} must not be negative, got {value!r}")
    return f


def _r2(v):
    return None if v is None else round(v, 2)


@dataclass(frozen=True)
class FeeBreakdown:
    order_price: float
    commission_percent: float
    commission_amount: float
    fees: Dict[str, float]
    gross_deductions: float
    gst_percent: float
    gst_amount: float
    tcs_percent: float
    tcs_amount: float
    expected_payout: float

    def fee(self, code: str) -> float:
        return self.fees.get(code, 0.0)

    @property
    def total_deductions(self) -> float:
        return self.gross_deductions + self.gst_amount + self.tcs_amount

    def to_dict(self) -> dict:
        return {
            "order_price": _r2(self.order_price),
            "commission_percent": self.commission_percent,
            "commission": _r2(self.commission_amount),
            "fees": {k: _r2(v) for k, v in self.fees.items()},
            "gross_deductions": _r2(self.gross_deductions),
            "gst": _r2(self.gst_amount),
            "tcs": _r2(self.tcs_amount),
            "total_deductions": _r2(self.total_deductions),
            "expected_payout": _r2(self.expected_payout),
        }


def compute_payout_for_price(order_price, rate_card: RateCard, slab: Optional[RateCardSlab] = None) -> FeeBreakdown:
    """
    Every deduction is based on the order price, never on another deduction,
    except GST which is charged on the marketplace's deductions:

        commission = price * pct / 100
        fee        = price * value / 100  (percent)  |  value  (amount)
        gross      = commission + sum(fees)
        gst        = gross * gst% / 100
        tcs        = price * tcs% / 100
        payout     = price - gross - gst - tcs
    """
    price = _finite("order price", order_price)

    if slab is not None:
        pct = slab.commission_percent
    elif rate_card.commission_type == "tiered":
        raise InvalidInput(f"rate card {rate_card.id} is tiered; a slab is required")
    else:
        pct = rate_card.commission_percent
    pct = _finite("commission percent", pct)

    commission = price * pct / 100

    fees = {}
    for f in rate_card.fees:
        value = _finite(f"fee {f.fee_code}", f.fee_value)
        fees[f.fee_code] = price * value / 100 if f.fee_type == "percent" else value

    gross = commission + sum(fees.values())
    gst_pct = _finite("gst percent", rate_card.gst_percent)
    tcs_pct = _finite("tcs percent", rate_card.tcs_percent)
    gst = gross * gst_pct / 100
    tcs = price * tcs_pct / 100

    return FeeBreakdown(
        order_price=price,
        commission_percent=pct,
        commission_amount=commission,
        fees=fees,
        gross_deductions=gross,
        gst_percent=gst_pct,
        gst_amount=gst,
        tcs_percent=tcs_pct,
        tcs_amount=tcs,
        expected_payout=price - gross - gst - tcs,
    )


def compute_expected_payout(order: Order, rate_card: RateCard, slab: Optional[RateCardSlab] = None) -> FeeBreakdown:
    return compute_payout_for_price(order.selling_price, rate_card, slab)


@dataclass(frozen=True)
class ReconciliationResult:
    order_id: str
    rate_card_id: Optional[str]
    slab: Optional[str]
    breakdown: FeeBreakdown
    actual_payout: Optional[float]
    delta: Optional[float]
    tolerance: float
    mismatch: bool
    expected_settlement_date: Optional[date] = None
    payout_date: Optional[date] = None
    meta: Dict[str, object] = field(default_factory=dict)

    @property
    def expected_payout(self) -> float:
        return self.breakdown.expected_payout

    @property
    def status(self) -> str:
        if self.actual_payout is None:
            return "unsettled"
        return "mismatch" if self.mismatch else "matched"

    @property
    def late(self) -> bool:
        if self.expected_settlement_date is None or self.payout_date is None:
            return False
        return self.payout_date > self.expected_settlement_date

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "rate_card_id": self.rate_card_id,
            "slab": self.slab,
            "status": self.status,
            "expected_payout": _r2(self.expected_payout),
            "actual_payout": _r2(self.actual_payout),
            "delta": _r2(self.delta),
            "tolerance": self.tolerance,
            "mismatch": self.mismatch,
            "expected_settlement_date": (
                self.expected_settlement_date.isoformat() if self.expected_settlement_date else None
            ),
            "payout_date": self.payout_date.isoformat() if self.payout_date else None,
            "late": self.late,
            "breakdown": self.breakdown.to_dict(),
            **self.meta,
        }


def classify(
    breakdown: FeeBreakdown,
    actual_amount,
    tolerance=DEFAULT_TOLERANCE,
    *,
    order_id: str = "",
    rate_card_id: Optional[str] = None,
    slab: Optional[RateCardSlab] = None,
) -> ReconciliationResult:
    """
    delta = expected - actual (positive: marketplace paid less than expected).
    mismatch when |delta| > tolerance. actual_amount None means no settlement
    has arrived yet: never a mismatch.
    """
    tol = _finite("tolerance", tolerance)
    if actual_amount is None:
        actual, delta, mismatch = None, None, False
    else:
        actual = _finite("actual settlement amount", actual_amount, allow_negative=True)
        delta = breakdown.expected_payout - actual
        mismatch = abs(delta) > tol

    return ReconciliationResult(
        order_id=order_id,
        rate_card_id=rate_card_id,
        slab=slab.label() if slab is not None else None,
        breakdown=breakdown,
        actual_payout=actual,
        delta=delta,
        tolerance=tol,
        mismatch=mismatch,
    )
