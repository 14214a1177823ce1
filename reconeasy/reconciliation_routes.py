# reconeasy/reconciliation_routes.py
# Rate cards + payout reconciliation API

from __future__ import annotations

import io
import logging
from datetime import date
from typing import Optional

import pandas as pd
from fastapi import APIRouter, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from reconeasy.calculator import classify, compute_payout_for_price
from reconeasy.config import load_config
from reconeasy.db import SessionLocal
from reconeasy.errors import ReconError
from reconeasy.models import OrderRaw, RateCardV2, ReturnsRaw, SettlementRaw
from reconeasy.rate_card_import import find_overlaps, import_rate_cards
from reconeasy.rate_cards import card_status, expiring_rate_cards, summarize_rate_cards
from reconeasy.reconcile import ReconFailure, reconcile_orders, reconcile_returns, report_to_frame
from reconeasy.resolver import resolve
from reconeasy.settlement_cycle import expected_settlement_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/db/recon", tags=["reconciliation"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _recon_http_error(e: ReconError) -> HTTPException:
    return HTTPException(status_code=422, detail={"code": e.code, "message": e.message})


def _config(tolerance: Optional[float]):
    config = load_config()
    if tolerance is None:
        return config
    try:
        return config.with_tolerance(tolerance)
    except ReconError as e:
        raise _recon_http_error(e)


def _load_cards(db):
    """Stored cards that validate; a broken card is logged and left out."""
    cards = []
    for row in db.query(RateCardV2).all():
        try:
            cards.append(row.to_domain())
        except ReconError as e:
            logger.warning("Rate card %s ignored (%s): %s", row.id, e.code, e.message)
    return cards


def _load_rows(rows, failure):
    """Convert stored rows one by one; a row that doesn't validate becomes a ReconFailure."""
    records, failures = [], []
    for row in rows:
        try:
            records.append(row.to_domain())
        except ReconError as e:
            failures.append(failure(row, e))
    return records, failures


def _order_failure(row, e):
    logger.warning("Stored row for order %s skipped (%s): %s", row.order_id, e.code, e.message)
    return ReconFailure(str(row.order_id), e.code, e.message)


def _return_failure(row, e):
    logger.warning("Stored return %s skipped (%s): %s", row.return_id, e.code, e.message)
    return ReconFailure(str(row.order_id), e.code, e.message, str(row.return_id))


def _load_facts(db, order_by=None):
    """
    Orders and settlement legs from storage. An order with a broken row of
    its own, or a broken settlement leg, is reported instead of reconciled.
    """
    query = db.query(OrderRaw)
    if order_by is not None:
        query = query.order_by(order_by)
    orders, failures = _load_rows(query.all(), _order_failure)
    settlements, bad_legs = _load_rows(db.query(SettlementRaw).all(), _order_failure)

    failed = {f.order_id for f in failures}
    for f in bad_legs:
        if f.order_id not in failed:
            failures.append(f)
            failed.add(f.order_id)
    orders = [o for o in orders if o.order_id not in failed]
    settlements = [s for s in settlements if s.order_id not in failed]
    return orders, settlements, failures


def _run_batch(db, config):
    cards = _load_cards(db)
    orders, settlements, failures = _load_facts(db, OrderRaw.order_id.asc())
    report = reconcile_orders(orders, cards, settlements, config)
    report.failures[:0] = failures
    return report


def _read_upload(content: bytes) -> pd.DataFrame:
    # Try CSV first, then Excel
    try:
        return pd.read_csv(io.BytesIO(content))
    except Exception:
        try:
            return pd.read_excel(io.BytesIO(content))
        except Exception:
            raise HTTPException(400, "Could not parse file. Upload CSV or Excel.")


# ---------------------------------------------------------------------------
# Rate cards: list with status, metrics and expiry warnings
# ---------------------------------------------------------------------------

@router.get("/rate-cards")
def list_rate_cards(as_of: Optional[date] = Query(None, description="Status date, default today")):
    today = as_of or date.today()
    db = SessionLocal()
    try:
        cards = _load_cards(db)
    finally:
        db.close()

    config = load_config()
    data = []
    for c in sorted(cards, key=lambda c: (c.platform_id.lower(), c.category_id.lower(), c.effective_from)):
        d = c.model_dump(mode="json")
        d["status"] = card_status(c, today)
        d["description"] = c.describe()
        data.append(d)

    return {
        "data": data,
        "metrics": summarize_rate_cards(cards, today),
        "expiring": expiring_rate_cards(cards, today, config.notifications),
    }


# ---------------------------------------------------------------------------
# Rate cards: import from CSV/Excel
# ---------------------------------------------------------------------------

@router.post("/rate-cards/import")
def import_rate_card_file(
    dry_run: bool = Query(False, description="Validate only, don't store"),
    file: UploadFile = File(...),
):
    """
    Upload a rate card sheet. Valid cards that don't overlap a stored card
    for the same marketplace/category are inserted; overlapping ones are
    reported with a suggested start date and left out.
    """
    content = file.file.read()
    if not content:
        raise HTTPException(400, "Empty file")

    report = import_rate_cards(_read_upload(content), load_config())

    db = SessionLocal()
    try:
        existing = _load_cards(db)
        overlaps = find_overlaps(report.cards, existing)
        # overlaps inside the same upload break resolution just the same
        for i, card in enumerate(report.cards):
            overlaps.extend(find_overlaps([card], report.cards[:i]))
        blocked = {o["rate_card_id"] for o in overlaps}
        to_insert = [c for c in report.cards if c.id not in blocked]

        inserted, skipped = 0, []
        if not dry_run:
            for card in to_insert:
                # archived card with the same id
                if db.get(RateCardV2, card.id) is not None:
                    skipped.append(card.id)
                    continue
                db.add(RateCardV2.from_domain(card))
                inserted += 1
            db.commit()
            logger.info("Imported %s rate cards (%s overlapping, %s skipped)", inserted, len(blocked), len(skipped))

        out = report.to_dict()
        out.update({
            "ok": True,
            "dry_run": dry_run,
            "inserted": inserted,
            "skipped": skipped,
            "overlaps": overlaps,
        })
        return out
    except ReconError as e:
        db.rollback()
        raise _recon_http_error(e)
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Preview: one order against the stored rate cards
# ---------------------------------------------------------------------------

class PayoutPreviewRequest(BaseModel):
    platform_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    order_date: date
    selling_price: float = Field(..., ge=0, allow_inf_nan=False)
    actual_amount: Optional[float] = Field(None, allow_inf_nan=False)
    tolerance: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


@router.post("/preview")
def preview_payout(payload: PayoutPreviewRequest):
    config = _config(payload.tolerance)
    db = SessionLocal()
    try:
        cards = _load_cards(db)
    finally:
        db.close()

    try:
        res = resolve(cards, payload.platform_id, payload.category_id, payload.order_date, payload.selling_price)
        breakdown = compute_payout_for_price(payload.selling_price, res.rate_card, res.slab)
        result = classify(
            breakdown,
            payload.actual_amount,
            config.tolerance,
            rate_card_id=res.rate_card.id,
            slab=res.slab,
        )
        due = expected_settlement_date(res.rate_card, payload.order_date)
    except ReconError as e:
        raise _recon_http_error(e)

    out = result.to_dict()
    out.pop("order_id", None)
    out["expected_settlement_date"] = due.isoformat() if due else None
    return out


# ---------------------------------------------------------------------------
# Batch: all stored orders vs settlements
# ---------------------------------------------------------------------------

@router.get("/run")
def run_reconciliation(tolerance: Optional[float] = Query(None, ge=0)):
    config = _config(tolerance)
    db = SessionLocal()
    try:
        report = _run_batch(db, config)
    finally:
        db.close()
    return report.to_dict()


@router.get("/returns")
def run_returns_reconciliation(tolerance: Optional[float] = Query(None, ge=0)):
    config = _config(tolerance)
    db = SessionLocal()
    try:
        cards = _load_cards(db)
        returns, failures = _load_rows(
            db.query(ReturnsRaw).order_by(ReturnsRaw.return_id.asc()).all(), _return_failure,
        )
        orders, settlements, order_failures = _load_facts(db)
    finally:
        db.close()

    # a return whose order row is broken carries that order's failure
    broken = {f.order_id: f for f in order_failures}
    for ret in returns:
        if ret.order_id in broken:
            f = broken[ret.order_id]
            failures.append(ReconFailure(ret.order_id, f.reason, f.message, ret.return_id))
    returns = [r for r in returns if r.order_id not in broken]

    results, return_failures = reconcile_returns(returns, orders, cards, settlements, config)
    failures.extend(return_failures)
    return {
        "results": [r.to_dict() for r in results],
        "failures": [f.to_dict() for f in failures],
        "discrepancies": sum(1 for r in results if r.mismatch),
    }


@router.get("/export.csv")
def export_reconciliation(tolerance: Optional[float] = Query(None, ge=0)):
    config = _config(tolerance)
    db = SessionLocal()
    try:
        report = _run_batch(db, config)
    finally:
        db.close()

    output = io.StringIO()
    report_to_frame(report).to_csv(output, index=False)
    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=reconciliation.csv"},
    )
