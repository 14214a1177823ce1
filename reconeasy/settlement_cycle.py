# reconeasy/settlement_cycle.py
# Expected settlement date from a rate card's payout cadence

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from reconeasy.errors import InvalidInput
from reconeasy.rate_cards import RateCard

# Presets the rate-card form offers per marketplace
PLATFORM_PRESETS = {
    "amazon": {"settlement_basis": "t_plus", "t_plus_days": 7},
    "flipkart": {"settlement_basis": "t_plus", "t_plus_days": 10},
    "myntra": {"settlement_basis": "monthly", "monthly_day": "7"},
    "quick": {"settlement_basis": "weekly", "weekly_weekday": 5},
}


def _next_weekday(after: date, iso_weekday: int) -> date:
    """First date strictly after `after` falling on iso_weekday (1=Mon..7=Sun)."""
    delta = (iso_weekday - after.isoweekday()) % 7 or 7
    return after + timedelta(days=delta)


def _nth_weekday_of_month(month_start: date, iso_weekday: int, nth: int) -> date:
    offset = (iso_weekday - month_start.isoweekday()) % 7
    return month_start + timedelta(days=offset + 7 * (nth - 1))


def _day_of_month(month_start: date, monthly_day: str) -> date:
    last = calendar.monthrange(month_start.year, month_start.month)[1]
    day = last if monthly_day == "eom" else min(int(monthly_day), last)
    return month_start.replace(day=day)


def _first_in_months_after(after: date, pick) -> date:
    month = after.replace(day=1)
    while True:
        candidate = pick(month)
        if candidate > after:
            return candidate
        month = month + relativedelta(months=1)


def expected_settlement_date(card: RateCard, dispatch_date: date) -> Optional[date]:
    """
    When the marketplace should pay for an order dispatched on dispatch_date.
    Returns None when the card has no settlement basis configured.
    grace_days is added on top of the cadence date.
    """
    basis = card.settlement_basis
    if basis is None:
        return None

    if basis == "t_plus":
        if card.t_plus_days is None:
            raise InvalidInput(f"rate card {card.id}: t_plus settlement needs t_plus_days")
        due = dispatch_date + timedelta(days=card.t_plus_days)

    elif basis == "weekly":
        if card.weekly_weekday is None:
            raise InvalidInput(f"rate card {card.id}: weekly settlement needs weekly_weekday")
        due = _next_weekday(dispatch_date, card.weekly_weekday)

    elif basis == "bi_weekly":
        if card.bi_weekly_weekday is None or card.bi_weekly_which is None:
            raise InvalidInput(f"rate card {card.id}: bi_weekly settlement needs weekday and first/second")
        nth = 1 if card.bi_weekly_which == "first" else 2
        due = _first_in_months_after(
            dispatch_date,
            lambda m: _nth_weekday_of_month(m, card.bi_weekly_weekday, nth),
        )

    else:
        if card.monthly_day is None:
            raise InvalidInput(f"rate card {card.id}: monthly settlement needs monthly_day")
        due = _first_in_months_after(dispatch_date, lambda m: _day_of_month(m, card.monthly_day))

    return due + timedelta(days=card.grace_days)
