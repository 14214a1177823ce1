# reconeasy/rate_cards.py
# Rate cards, orders, settlements: validated, immutable records

from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta
from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from reconeasy.config import NotificationConfig
from reconeasy.errors import InvalidInput

FEE_CODES = ("shipping", "rto", "packaging", "fixed", "collection", "tech", "storage")
SETTLEMENT_BASES = ("t_plus", "weekly", "bi_weekly", "monthly")
_TAX_DEFAULTS = {"gst_percent": 18.0, "tcs_percent": 1.0}

_NUMBER_JUNK = re.compile(r"[%₹$€£,\s]")
_NUMBER_RE = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)$")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def coerce_number(v):
    """
    Turns spreadsheet/JSON numerics into float:
      - None, "", "null", "None", NaN -> None
      - "₹1,200", "12.5%", " 40 " -> float
    Anything else that isn't a plain finite number raises ValueError.
    """
    if v is None:
        return None
    if isinstance(v, (int, float)):
        f = float(v)
        if math.isnan(f):
            return None
        if math.isinf(f):
            raise ValueError(f"not a finite number: {v!r}")
        return f
    s = str(v).strip()
    if s in ("", "null", "None", "nan", "NaN"):
        return None
    cleaned = _NUMBER_JUNK.sub("", s)
    if not _NUMBER_RE.match(cleaned):
        raise ValueError(f"not a number: {v!r}")
    return float(cleaned)


def coerce_date(v):
    if v is None:
        return None
    if isinstance(v, datetime):  # also covers pandas.Timestamp
        return v.date()
    if isinstance(v, str) and not v.strip():
        return None
    return v


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False, str_strip_whitespace=True)


def parse_record(model, payload, context=None):
    """
    Validate a raw mapping into `model`, reporting failures as InvalidInput.
    `context` reaches the field validators; RateCard reads "tax_defaults"
    from it to fill blank GST / TCS.
    """
    try:
        return model.model_validate(payload, context=context)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model.__name__}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidInput(f"invalid {model.__name__}: {problems}") from exc


# ---------------------------------------------------------------------------
# Rate card configuration
# ---------------------------------------------------------------------------

class RateCardSlab(_Record):
    """Price band [min_price, max_price); max_price None is open upward."""

    min_price: float = Field(0.0, ge=0)
    max_price: Optional[float] = Field(None, gt=0)
    commission_percent: float = Field(..., ge=0, le=100)

    @field_validator("min_price", "max_price", "commission_percent", mode="before")
    @classmethod
    def _numbers(cls, v, info):
        f = coerce_number(v)
        if f is None and info.field_name == "min_price":
            return 0.0
        return f

    @model_validator(mode="after")
    def _band(self):
        if self.max_price is not None and self.max_price <= self.min_price:
            raise ValueError(f"max_price {self.max_price} must be above min_price {self.min_price}")
        return self

    def contains(self, price: float) -> bool:
        if price < self.min_price:
            return False
        return self.max_price is None or price < self.max_price

    def label(self) -> str:
        upper = "open" if self.max_price is None else f"{self.max_price:g}"
        return f"{self.min_price:g}-{upper}: {self.commission_percent:g}%"


class RateCardFee(_Record):
    fee_code: str = Field(..., min_length=1)
    fee_type: Literal["percent", "amount"] = "percent"
    fee_value: float = Field(..., ge=0)

    @field_validator("fee_code", "fee_type", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("fee_value", mode="before")
    @classmethod
    def _number(cls, v):
        return coerce_number(v)


class RateCard(_Record):
    id: str
    platform_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)

    commission_type: Literal["flat", "tiered"] = "flat"
    commission_percent: Optional[float] = Field(None, ge=0, le=100)
    slabs: Tuple[RateCardSlab, ...] = ()
    fees: Tuple[RateCardFee, ...] = ()

    gst_percent: float = Field(18.0, ge=0, le=100)
    tcs_percent: float = Field(1.0, ge=0, le=100)

    # settlement cadence (expected settlement date only, never fee amounts)
    settlement_basis: Optional[Literal["t_plus", "weekly", "bi_weekly", "monthly"]] = None
    t_plus_days: Optional[int] = Field(None, ge=0)
    weekly_weekday: Optional[int] = Field(None, ge=1, le=7)
    bi_weekly_weekday: Optional[int] = Field(None, ge=1, le=7)
    bi_weekly_which: Optional[Literal["first", "second"]] = None
    monthly_day: Optional[str] = None
    grace_days: int = Field(0, ge=0)

    effective_from: date
    effective_to: Optional[date] = None
    global_min_price: Optional[float] = Field(None, ge=0)
    global_max_price: Optional[float] = Field(None, ge=0)

    archived: bool = False
    notes: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_str(cls, v):
        return str(v) if v is not None else v

    @field_validator(
        "commission_percent", "gst_percent", "tcs_percent",
        "global_min_price", "global_max_price",
        mode="before",
    )
    @classmethod
    def _numbers(cls, v, info):
        f = coerce_number(v)
        if f is None and info.field_name in _TAX_DEFAULTS:
            defaults = (info.context or {}).get("tax_defaults") or _TAX_DEFAULTS
            return defaults[info.field_name]
        return f

    @field_validator("t_plus_days", "weekly_weekday", "bi_weekly_weekday", "grace_days", mode="before")
    @classmethod
    def _ints(cls, v, info):
        f = coerce_number(v)
        if f is None:
            return 0 if info.field_name == "grace_days" else None
        return f

    @field_validator("effective_from", "effective_to", mode="before")
    @classmethod
    def _dates(cls, v):
        return coerce_date(v)

    @field_validator("settlement_basis", "bi_weekly_which", "monthly_day", "commission_type", mode="before")
    @classmethod
    def _lower(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(int(v))
        if isinstance(v, str):
            v = v.strip().lower().replace("-", "_")
            return v or None
        return v

    @field_validator("monthly_day")
    @classmethod
    def _monthly_day(cls, v):
        if v is None:
            return v
        if v == "eom" or (v.isdigit() and 1 <= int(v) <= 31):
            return v
        raise ValueError("monthly_day must be 1-31 or 'eom'")

    @model_validator(mode="after")
    def _consistency(self):
        if self.commission_type == "flat" and self.commission_percent is None:
            raise ValueError("commission_percent is required for flat commission")
        if self.commission_type == "tiered" and not self.slabs:
            raise ValueError("tiered commission requires at least one slab")
        codes = [f.fee_code for f in self.fees]
        dupes = sorted({c for c in codes if codes.count(c) > 1})
        if dupes:
            raise ValueError(f"duplicate fee codes: {', '.join(dupes)}")
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not be before effective_from")
        if (
            self.global_min_price is not None
            and self.global_max_price is not None
            and self.global_max_price < self.global_min_price
        ):
            raise ValueError("global_max_price must not be below global_min_price")
        missing = {
            "t_plus": self.t_plus_days is None,
            "weekly": self.weekly_weekday is None,
            "bi_weekly": self.bi_weekly_weekday is None or self.bi_weekly_which is None,
            "monthly": self.monthly_day is None,
        }
        if self.settlement_basis is not None and missing[self.settlement_basis]:
            raise ValueError(f"incomplete {self.settlement_basis} settlement cadence")
        return self

    # helpers used by the resolver and the status views

    def matches(self, platform_id: str, category_id: str) -> bool:
        return (
            self.platform_id.strip().lower() == (platform_id or "").strip().lower()
            and self.category_id.strip().lower() == (category_id or "").strip().lower()
        )

    def covers(self, on: date) -> bool:
        if on < self.effective_from:
            return False
        return self.effective_to is None or on <= self.effective_to

    def within_global_bounds(self, price: float) -> bool:
        if self.global_min_price is not None and price < self.global_min_price:
            return False
        if self.global_max_price is not None and price > self.global_max_price:
            return False
        return True

    def describe(self) -> str:
        fees = ", ".join(
            f"{f.fee_code} {f.fee_value:g}{'%' if f.fee_type == 'percent' else ''}" for f in self.fees
        )
        fee_part = f"; Fees: {fees}" if fees else ""
        if self.commission_type == "tiered":
            snippets = ", ".join(s.label() for s in self.slabs[:3])
            extra = ", …" if len(self.slabs) > 3 else ""
            plural = "" if len(self.slabs) == 1 else "s"
            return f"Tiered commission ({len(self.slabs)} slab{plural}); {snippets}{extra}{fee_part}"
        return f"Flat {self.commission_percent:g}% commission{fee_part}"


# ---------------------------------------------------------------------------
# Ingested facts
# ---------------------------------------------------------------------------

class Order(_Record):
    order_id: str = Field(..., min_length=1)
    platform_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    sku: Optional[str] = None
    selling_price: float = Field(..., ge=0)
    order_date: date
    status: Optional[str] = None

    @field_validator("order_id", "sku", mode="before")
    @classmethod
    def _str(cls, v):
        return str(v) if v is not None else v

    @field_validator("selling_price", mode="before")
    @classmethod
    def _number(cls, v):
        return coerce_number(v)

    @field_validator("order_date", mode="before")
    @classmethod
    def _date(cls, v):
        return coerce_date(v)


class Settlement(_Record):
    order_id: str = Field(..., min_length=1)
    actual_amount: float
    payout_date: Optional[date] = None
    utr_number: Optional[str] = None
    # itemized deductions as reported by the marketplace
    fees: Dict[str, float] = Field(default_factory=dict)

    @field_validator("order_id", mode="before")
    @classmethod
    def _str(cls, v):
        return str(v) if v is not None else v

    @field_validator("actual_amount", mode="before")
    @classmethod
    def _number(cls, v):
        return coerce_number(v)

    @field_validator("payout_date", mode="before")
    @classmethod
    def _date(cls, v):
        return coerce_date(v)


class ReturnRecord(_Record):
    return_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    marketplace: Optional[str] = None
    sku: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None
    refund_amount: Optional[float] = None

    @field_validator("return_id", "order_id", mode="before")
    @classmethod
    def _str(cls, v):
        return str(v) if v is not None else v

    @field_validator("refund_amount", mode="before")
    @classmethod
    def _number(cls, v):
        return coerce_number(v)


# ---------------------------------------------------------------------------
# Status / metrics / expiry
# ---------------------------------------------------------------------------

def card_status(card: RateCard, today: date) -> str:
    if card.effective_from > today:
        return "upcoming"
    if card.effective_to is not None and card.effective_to < today:
        return "expired"
    return "active"


def summarize_rate_cards(cards, today: date) -> dict:
    live = [c for c in cards if not c.archived]
    statuses = [card_status(c, today) for c in live]
    flat = [c.commission_percent for c in cards if c.commission_type == "flat" and c.commission_percent is not None]
    return {
        "total": len(cards),
        "active": statuses.count("active"),
        "expired": statuses.count("expired"),
        "upcoming": statuses.count("upcoming"),
        "archived": len(cards) - len(live),
        "avg_flat_commission": round(sum(flat) / len(flat), 2) if flat else 0,
        "flat_count": len(flat),
    }


def expiring_rate_cards(cards, today: date, config: NotificationConfig | None = None) -> list[dict]:
    """
    Non-archived cards whose effective_to falls in the next `warning_days`.
    Severity is "reminder" inside `reminder_days`, else "warning".
    Already expired and open-ended cards are ignored.
    """
    config = config or NotificationConfig()
    horizon = today + timedelta(days=config.warning_days)
    out = []
    for card in cards:
        if card.archived or card.effective_to is None:
            continue
        if not today <= card.effective_to <= horizon:
            continue
        days_left = (card.effective_to - today).days
        out.append({
            "rate_card_id": card.id,
            "platform_id": card.platform_id,
            "category_id": card.category_id,
            "effective_to": card.effective_to.isoformat(),
            "days_left": days_left,
            "severity": "reminder" if days_left <= config.reminder_days else "warning",
        })
    out.sort(key=lambda n: (n["days_left"], n["rate_card_id"]))
    return out
