# reconeasy/resolver.py
# Rate card resolution: unique card per platform/category/date, then slab

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Sequence

from reconeasy.errors import (
    AmbiguousRateCard,
    InvalidInput,
    NoActiveRateCard,
    NoMatchingSlab,
    PriceOutOfBounds,
)
from reconeasy.rate_cards import RateCard, RateCardSlab

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    rate_card: RateCard
    slab: Optional[RateCardSlab] = None

    @property
    def commission_percent(self) -> float:
        if self.slab is not None:
            return self.slab.commission_percent
        return self.rate_card.commission_percent


def _check_price(price) -> float:
    try:
        p = float(price)
    except (TypeError, ValueError):
        raise InvalidInput(f"order price must be a number, got {price!r}")
    if not math.isfinite(p) or p < 0:
        raise InvalidInput(f"order price must be a finite non-negative number, got {price!r}")
    return p


def check_slab_partition(slabs: Sequence[RateCardSlab]) -> list[str]:
    """
    Slabs must tile the price axis from the lowest min_price upward:
    sorted by min_price, each slab's max_price equals the next slab's
    min_price, and only the last slab may be open-ended.
    Returns a list of problems (empty when the partition holds).
    """
    problems = []
    ordered = sorted(slabs, key=lambda s: s.min_price)
    for cur, nxt in zip(ordered, ordered[1:]):
        if cur.max_price is None:
            problems.append(f"open-ended slab {cur.label()} overlaps slab {nxt.label()}")
        elif cur.max_price > nxt.min_price:
            problems.append(f"slab {cur.label()} overlaps slab {nxt.label()}")
        elif cur.max_price < nxt.min_price:
            problems.append(f"gap between {cur.max_price:g} and {nxt.min_price:g}")
    return problems


def find_slab(rate_card: RateCard, price) -> RateCardSlab:
    price = _check_price(price)
    problems = check_slab_partition(rate_card.slabs)
    if problems:
        raise NoMatchingSlab(f"rate card {rate_card.id} has invalid slabs: {'; '.join(problems)}")

    hits = [s for s in rate_card.slabs if s.contains(price)]
    if not hits:
        raise NoMatchingSlab(f"no slab of rate card {rate_card.id} covers price {price:g}")
    return hits[0]


def candidate_cards(
    rate_cards: Iterable[RateCard],
    platform_id: str,
    category_id: str,
    order_date: date,
) -> list[RateCard]:
    return [
        c for c in rate_cards
        if not c.archived and c.matches(platform_id, category_id) and c.covers(order_date)
    ]


def resolve(
    rate_cards: Iterable[RateCard],
    platform_id: str,
    category_id: str,
    order_date: date,
    order_price,
) -> Resolution:
    """
    Pick the single rate card active for platform/category on order_date,
    then the slab covering order_price when the card is tiered.

    Raises NoActiveRateCard, AmbiguousRateCard, PriceOutOfBounds or
    NoMatchingSlab. Overlapping windows are never settled by list order.
    """
    price = _check_price(order_price)
    if not isinstance(order_date, date):
        raise InvalidInput(f"order date must be a date, got {order_date!r}")

    found = candidate_cards(rate_cards, platform_id, category_id, order_date)
    if not found:
        raise NoActiveRateCard(
            f"no active rate card for {platform_id}/{category_id} on {order_date.isoformat()}"
        )
    if len(found) > 1:
        ids = sorted(c.id for c in found)
        logger.warning("Overlapping rate cards for %s/%s on %s: %s", platform_id, category_id, order_date, ids)
        raise AmbiguousRateCard(
            f"{len(found)} rate cards active for {platform_id}/{category_id} on {order_date.isoformat()}: "
            + ", ".join(ids),
            card_ids=ids,
        )

    card = found[0]
    if not card.within_global_bounds(price):
        lo = "-inf" if card.global_min_price is None else f"{card.global_min_price:g}"
        hi = "inf" if card.global_max_price is None else f"{card.global_max_price:g}"
        raise PriceOutOfBounds(f"price {price:g} outside rate card {card.id} bounds [{lo}, {hi}]")

    if card.commission_type == "flat":
        return Resolution(rate_card=card)
    return Resolution(rate_card=card, slab=find_slab(card, price))
