# reconeasy/models.py
# Rate cards, orders, settlements, returns - Database Models

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from reconeasy.db import Base
from reconeasy.rate_cards import Order, RateCard, ReturnRecord, Settlement, parse_record


def _uuid_str() -> str:
    return str(uuid.uuid4())


class RateCardV2(Base):
    """One marketplace/category fee agreement (flat or tiered)."""
    __tablename__ = "rate_cards_v2"

    id = Column(String, primary_key=True, default=_uuid_str)

    platform_id = Column(String, nullable=False, index=True)
    category_id = Column(String, nullable=False, index=True)

    # 'flat' | 'tiered'
    commission_type = Column(String, nullable=False, default="flat")
    commission_percent = Column(Float, nullable=True)

    gst_percent = Column(Float, nullable=False, default=18.0)
    tcs_percent = Column(Float, nullable=False, default=1.0)

    # Settlement cadence
    settlement_basis = Column(String, nullable=True)
    t_plus_days = Column(Integer, nullable=True)
    weekly_weekday = Column(Integer, nullable=True)
    bi_weekly_weekday = Column(Integer, nullable=True)
    bi_weekly_which = Column(String, nullable=True)
    monthly_day = Column(String, nullable=True)
    grace_days = Column(Integer, nullable=False, default=0)

    # Validity (both inclusive; effective_to NULL = open-ended)
    effective_from = Column(Date, nullable=False, index=True)
    effective_to = Column(Date, nullable=True, index=True)

    global_min_price = Column(Float, nullable=True)
    global_max_price = Column(Float, nullable=True)

    archived = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    slabs = relationship(
        "RateCardSlabV2", back_populates="rate_card", cascade="all, delete-orphan", lazy="selectin",
        order_by="RateCardSlabV2.min_price",
    )
    fees = relationship(
        "RateCardFeeV2", back_populates="rate_card", cascade="all, delete-orphan", lazy="selectin",
    )

    def to_domain(self) -> RateCard:
        return parse_record(RateCard, {
            "id": self.id,
            "platform_id": self.platform_id,
            "category_id": self.category_id,
            "commission_type": self.commission_type,
            "commission_percent": self.commission_percent,
            "slabs": [
                {"min_price": s.min_price, "max_price": s.max_price, "commission_percent": s.commission_percent}
                for s in self.slabs
            ],
            "fees": [
                {"fee_code": f.fee_code, "fee_type": f.fee_type, "fee_value": f.fee_value}
                for f in self.fees
            ],
            "gst_percent": self.gst_percent,
            "tcs_percent": self.tcs_percent,
            "settlement_basis": self.settlement_basis,
            "t_plus_days": self.t_plus_days,
            "weekly_weekday": self.weekly_weekday,
            "bi_weekly_weekday": self.bi_weekly_weekday,
            "bi_weekly_which": self.bi_weekly_which,
            "monthly_day": self.monthly_day,
            "grace_days": self.grace_days,
            "effective_from": self.effective_from,
            "effective_to": self.effective_to,
            "global_min_price": self.global_min_price,
            "global_max_price": self.global_max_price,
            "archived": bool(self.archived),
            "notes": self.notes,
        })

    @classmethod
    def from_domain(cls, card: RateCard) -> "RateCardV2":
        data = card.model_dump(exclude={"slabs", "fees"})
        row = cls(**data)
        row.slabs = [RateCardSlabV2(**s.model_dump()) for s in card.slabs]
        row.fees = [RateCardFeeV2(**f.model_dump()) for f in card.fees]
        return row


class RateCardSlabV2(Base):
    """Commission band [min_price, max_price) of a tiered rate card."""
    __tablename__ = "rate_card_slabs"

    id = Column(Integer, primary_key=True, index=True)
    rate_card_id = Column(String, ForeignKey("rate_cards_v2.id", ondelete="CASCADE"), nullable=False, index=True)

    min_price = Column(Float, nullable=False, default=0.0)
    max_price = Column(Float, nullable=True)
    commission_percent = Column(Float, nullable=False)

    rate_card = relationship("RateCardV2", back_populates="slabs")


class RateCardFeeV2(Base):
    __tablename__ = "rate_card_fees"

    id = Column(Integer, primary_key=True, index=True)
    rate_card_id = Column(String, ForeignKey("rate_cards_v2.id", ondelete="CASCADE"), nullable=False, index=True)

    # shipping, rto, packaging, fixed, collection, tech, storage
    fee_code = Column(String, nullable=False)
    # 'percent' of order value | flat 'amount'
    fee_type = Column(String, nullable=False, default="percent")
    fee_value = Column(Float, nullable=False)

    rate_card = relationship("RateCardV2", back_populates="fees")

    __table_args__ = (
        UniqueConstraint("rate_card_id", "fee_code", name="uq_rate_card_fee_code"),
    )


class OrderRaw(Base):
    __tablename__ = "orders_raw"

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(String, unique=True, index=True, nullable=False)
    marketplace = Column(String, index=True, nullable=False)
    category = Column(String, index=True, nullable=False)
    sku = Column(String, index=True, nullable=True)

    selling_price = Column(Float, nullable=False)
    # dispatch date, falls back to order date upstream
    order_date = Column(Date, nullable=False, index=True)
    order_status = Column(String, nullable=True)

    raw_json = Column(Text, nullable=True)
    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_domain(self) -> Order:
        return parse_record(Order, {
            "order_id": self.order_id,
            "platform_id": self.marketplace,
            "category_id": self.category,
            "sku": self.sku,
            "selling_price": self.selling_price,
            "order_date": self.order_date,
            "status": self.order_status,
        })


class SettlementRaw(Base):
    """One settlement leg; an order may be paid in several."""
    __tablename__ = "settlements_raw"

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(String, index=True, nullable=False)
    paid_amount = Column(Float, nullable=False)
    payout_date = Column(Date, nullable=True, index=True)
    utr_number = Column(String, nullable=True, index=True)

    raw_json = Column(Text, nullable=True)
    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_domain(self) -> Settlement:
        return parse_record(Settlement, {
            "order_id": self.order_id,
            "actual_amount": self.paid_amount,
            "payout_date": self.payout_date,
            "utr_number": self.utr_number,
        })


class ReturnsRaw(Base):
    __tablename__ = "returns_raw"

    id = Column(Integer, primary_key=True, index=True)

    return_id = Column(String, unique=True, index=True, nullable=False)
    order_id = Column(String, index=True, nullable=False)
    marketplace = Column(String, nullable=True)
    sku = Column(String, nullable=True)

    return_reason = Column(String, nullable=True)
    return_status = Column(String, nullable=True)
    refund_amount = Column(Float, nullable=True)

    raw_json = Column(Text, nullable=True)
    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_domain(self) -> ReturnRecord:
        return parse_record(ReturnRecord, {
            "return_id": self.return_id,
            "order_id": self.order_id,
            "marketplace": self.marketplace,
            "sku": self.sku,
            "reason": self.return_reason,
            "status": self.return_status,
            "refund_amount": self.refund_amount,
        })
