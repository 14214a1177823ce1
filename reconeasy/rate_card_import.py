# reconeasy/rate_card_import.py
# Rate card spreadsheet rows -> validated RateCard payloads

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional

import pandas as pd

from reconeasy.config import ReconConfig
from reconeasy.errors import InvalidInput
from reconeasy.rate_cards import RateCard, coerce_number, parse_record
from reconeasy.resolver import check_slab_partition
from reconeasy.settlement_cycle import PLATFORM_PRESETS

logger = logging.getLogger(__name__)

IMPORT_FIELDS = [
    "marketplace", "category", "price_range_min", "price_range_max", "commission_pct",
    "shipping_fee", "fixed_fee", "rto_fee", "packaging_fee", "gst_rate",
    "effective_from", "effective_to",
]

# flat-fee columns -> fee_code on the card
AMOUNT_FEE_COLUMNS = {
    "shipping_fee": "shipping",
    "fixed_fee": "fixed",
    "rto_fee": "rto",
    "packaging_fee": "packaging",
}

_HEADER_ALIASES = {
    "marketplace": ["marketplace", "platform", "platform id", "platform_id"],
    "category": ["category", "category id", "category_id"],
    "commission_type": ["commission type", "type"],
    "price_range_min": ["price range min", "min price", "min price ₹", "slab min price", "minimum price", "min_price"],
    "price_range_max": ["price range max", "max price", "max price ₹", "slab max price", "maximum price", "max_price"],
    "commission_pct": [
        "commission", "commission %", "commission pct", "commission percent", "commission rate",
        "commission % (tier)", "commission tier", "tier commission",
    ],
    "shipping_fee": ["shipping fee", "shipping", "logistics fee", "logistics fee ₹"],
    "fixed_fee": ["fixed fee", "fixed fee ₹"],
    "rto_fee": ["rto fee", "return logistics fee", "reverse logistics fee"],
    "packaging_fee": ["packaging fee", "packaging fee ₹"],
    "gst_rate": ["gst", "gst %", "gst rate", "gst percent", "gst tax"],
    "tcs_rate": ["tcs", "tcs %", "tcs rate", "tcs percent", "tax collected at source"],
    "effective_from": ["effective from", "valid from", "date from"],
    "effective_to": ["effective to", "valid to", "date to"],
    "settlement_cycle_days": [
        "settlement cycle (days)", "settlement cycle", "settlement cycle days", "settlement days",
        "t+ days", "t plus days", "t days",
    ],
    "notes": ["notes", "remarks"],
}


def canonical_header(name) -> str:
    s = str(name).lower().replace("+", " plus ")
    s = re.sub(r"[₹%()]", "", s)
    return re.sub(r"[^a-z0-9]+", "", s)


_HEADER_LOOKUP = {
    canonical_header(alias): field_name
    for field_name, aliases in _HEADER_ALIASES.items()
    for alias in aliases + [field_name]
}


def normalize_header(name) -> Optional[str]:
    """Field name for a spreadsheet header, or None when it isn't recognized."""
    return _HEADER_LOOKUP.get(canonical_header(name))


def _excel_serial(days, raw) -> date:
    try:
        return date(1899, 12, 30) + timedelta(days=int(days))
    except (OverflowError, ValueError):
        raise InvalidInput(f"invalid date: {raw}")


def parse_date(v) -> Optional[date]:
    """ISO, dd/mm/yyyy (mm/dd/yyyy when dd/mm is impossible) and Excel serials."""
    if v is None or (isinstance(v, float) and pd.isna(v)):
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    if isinstance(v, (int, float)):
        return _excel_serial(v, v)
    s = str(v).strip()
    if not s or s.lower() in ("nan", "none", "null", "nat"):
        return None
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", s):
        try:
            return date.fromisoformat(s)
        except ValueError:
            raise InvalidInput(f"invalid date: {s}")
    m = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", s)
    if m:
        a, b, y = (int(x) for x in m.groups())
        try:
            return date(y, b, a)
        except ValueError:
            try:
                return date(y, a, b)
            except ValueError:
                raise InvalidInput(f"invalid date: {s}")
    if re.fullmatch(r"\d+(\.\d+)?", s):
        return _excel_serial(float(s), s)
    dt = pd.to_datetime(s, errors="coerce", dayfirst=True)
    if pd.isna(dt):
        raise InvalidInput(f"invalid date: {s}")
    return dt.date()


def _ts(v):
    if v is None or (isinstance(v, float) and pd.isna(v)):
        return None
    s = str(v).strip()
    return s if s and s.lower() != "nan" else None


@dataclass
class ImportReport:
    cards: List[RateCard] = field(default_factory=list)
    rows: List[dict] = field(default_factory=list)
    unmapped_columns: List[str] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        return {
            "total": len(self.rows),
            "valid": sum(1 for r in self.rows if r["status"] == "valid"),
            "error": sum(1 for r in self.rows if r["status"] == "error"),
            "cards": len(self.cards),
        }

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "rows": self.rows,
            "cards": [c.model_dump(mode="json") for c in self.cards],
            "unmapped_columns": self.unmapped_columns,
        }


def _parse_row(raw: dict) -> tuple[dict, list[str]]:
    errors = []
    row = {}

    row["marketplace"] = _ts(raw.get("marketplace"))
    if not row["marketplace"]:
        errors.append("Missing marketplace/platform")
    row["category"] = _ts(raw.get("category"))
    if not row["category"]:
        errors.append("Missing category")

    for key in ("price_range_min", "price_range_max", "commission_pct", "gst_rate", "tcs_rate",
                "settlement_cycle_days", *AMOUNT_FEE_COLUMNS):
        try:
            row[key] = coerce_number(raw.get(key))
        except ValueError:
            errors.append(f"{key}: not a number ({raw.get(key)!r})")
            row[key] = None
    if row["commission_pct"] is None and not any(e.startswith("commission_pct") for e in errors):
        errors.append("Commission percentage missing")
    days = row["settlement_cycle_days"]
    if days is not None and (days < 0 or days != int(days)):
        errors.append(f"settlement_cycle_days: not a whole number of days ({days:g})")
        row["settlement_cycle_days"] = None

    for key in ("effective_from", "effective_to"):
        try:
            row[key] = parse_date(raw.get(key))
        except InvalidInput as e:
            errors.append(f"{key}: {e.message}")
            row[key] = None
    if row["effective_from"] is None and not any(e.startswith("effective_from") for e in errors):
        errors.append("Missing 'Effective From' date")

    row["commission_type"] = (_ts(raw.get("commission_type")) or "").lower() or None
    row["notes"] = _ts(raw.get("notes"))
    return row, errors


def _card_id(first: dict) -> str:
    parts = [first["marketplace"], first["category"], first["effective_from"].isoformat()]
    return ":".join(p.strip().lower().replace(" ", "-") for p in parts)


def _cadence(first: dict) -> dict:
    if first.get("settlement_cycle_days") is not None:
        return {"settlement_basis": "t_plus", "t_plus_days": int(first["settlement_cycle_days"])}
    return dict(PLATFORM_PRESETS.get(first["marketplace"].strip().lower(), {}))


def _build_card(rows: list[dict], config: ReconConfig) -> RateCard:
    first = rows[0]
    tiered = len(rows) > 1 or first["commission_type"] == "tiered"
    payload = {
        "id": _card_id(first),
        "platform_id": first["marketplace"],
        "category_id": first["category"],
        "commission_type": "tiered" if tiered else "flat",
        "gst_percent": first["gst_rate"],
        "tcs_percent": first["tcs_rate"],
        "effective_from": first["effective_from"],
        "effective_to": first["effective_to"],
        "notes": first["notes"],
        "fees": [
            {"fee_code": code, "fee_type": "amount", "fee_value": first[col]}
            for col, code in AMOUNT_FEE_COLUMNS.items()
            if first[col]
        ],
        **_cadence(first),
    }
    if tiered:
        payload["slabs"] = [
            {"min_price": r["price_range_min"], "max_price": r["price_range_max"],
             "commission_percent": r["commission_pct"]}
            for r in rows
        ]
    else:
        payload["commission_percent"] = first["commission_pct"]
        payload["global_min_price"] = first["price_range_min"]
        payload["global_max_price"] = first["price_range_max"]

    card = parse_record(RateCard, payload, context={"tax_defaults": config.tax_defaults})
    if tiered:
        problems = check_slab_partition(card.slabs)
        if problems:
            raise InvalidInput("; ".join(problems))
    return card


def import_rate_cards(frame: pd.DataFrame, config: Optional[ReconConfig] = None) -> ImportReport:
    """
    Validate a rate-card sheet. Rows sharing marketplace + category + validity
    window form one card: a single row is a flat card (its price range becomes
    the card's global bounds); several rows are the slabs of a tiered card,
    with fees and taxes taken from the first of them. Blank GST / TCS fall back
    to the configured defaults.
    """
    config = config or ReconConfig()
    report = ImportReport()

    columns = {}
    for col in frame.columns:
        mapped = normalize_header(col)
        if mapped is None or mapped in columns.values():
            # unknown header, or a second column for a field already mapped
            report.unmapped_columns.append(str(col))
        else:
            columns[col] = mapped
    if report.unmapped_columns:
        logger.warning("Unmapped rate card columns: %s", ", ".join(report.unmapped_columns))

    df = frame[list(columns)].rename(columns=columns)
    df = df.astype(object).where(pd.notna(df), None)

    groups = {}
    for pos, raw in enumerate(df.to_dict(orient="records"), start=1):
        row, errors = _parse_row(raw)
        entry = {
            "row": pos,
            "marketplace": row["marketplace"],
            "category": row["category"],
            "status": "error" if errors else "valid",
            "message": "; ".join(errors) if errors else "Valid row",
        }
        report.rows.append(entry)
        if errors:
            continue
        key = (
            row["marketplace"].lower(), row["category"].lower(),
            row["effective_from"], row["effective_to"],
        )
        groups.setdefault(key, []).append((entry, row))

    for members in groups.values():
        try:
            card = _build_card([row for _, row in members], config)
        except InvalidInput as e:
            for entry, _ in members:
                entry["status"] = "error"
                entry["message"] = e.message
            continue
        report.cards.append(card)

    logger.info("Rate card import: %s", report.summary)
    return report


# ---------------------------------------------------------------------------
# Overlap detection against existing cards
# ---------------------------------------------------------------------------

def _windows_overlap(a: RateCard, b: RateCard) -> bool:
    a_to = a.effective_to or date.max
    b_to = b.effective_to or date.max
    return a.effective_from <= b_to and b.effective_from <= a_to


def _same_terms(a: RateCard, b: RateCard) -> tuple[bool, bool]:
    same_commission = a.commission_type == b.commission_type and (
        a.commission_percent == b.commission_percent if a.commission_type == "flat" else a.slabs == b.slabs
    )
    same_fees = sorted(a.fees, key=lambda f: f.fee_code) == sorted(b.fees, key=lambda f: f.fee_code)
    return same_commission, same_fees


def find_overlaps(new_cards, existing_cards) -> list[dict]:
    """
    Window overlaps between incoming cards and stored ones for the same
    platform/category. "duplicate" when commission and fees are identical,
    "similar" otherwise; a shifted start date is suggested when the stored
    card has an end date.
    """
    out = []
    existing = [c for c in existing_cards if not c.archived]
    for new in new_cards:
        for old in existing:
            if not old.matches(new.platform_id, new.category_id) or not _windows_overlap(new, old):
                continue
            same_commission, same_fees = _same_terms(new, old)
            differences = []
            if not same_commission:
                differences.append("different commission")
            if not same_fees:
                differences.append("different fees")
            message = "Date overlap" + (f" with {' and '.join(differences)}" if differences else "")

            suggestion = None
            if old.effective_to is not None and new.effective_from <= old.effective_to:
                new_from = old.effective_to + timedelta(days=1)
                suggestion = {
                    "type": "shift_from",
                    "new_from": new_from.isoformat(),
                    "reason": f"Shift start date to {new_from.strftime('%d %b %Y')} to avoid overlap.",
                }
            out.append({
                "rate_card_id": new.id,
                "existing_id": old.id,
                "status": "similar" if differences else "duplicate",
                "message": message,
                "existing": old.describe(),
                "suggestion": suggestion,
            })
    return out
