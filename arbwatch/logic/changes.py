"""Decide whether a re-observed listing changed enough to record."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import insert, update
from sqlalchemy.engine import Engine

from arbwatch.config import ChangeThresholds
from arbwatch.db.repo import get_listing
from arbwatch.db.schema import listing_history, listings
from arbwatch.ingest.models import Listing
from arbwatch.utils.dates import utcnow
from arbwatch.utils.money import from_cents, to_cents

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChangeResult:
    price_changed: bool
    stock_changed: bool
    price_delta: float
    price_delta_percent: float

    @property
    def material(self) -> bool:
        return self.price_changed or self.stock_changed


def percent_change(new: float, old: float) -> float:
    old_cents = to_cents(old)
    if old_cents == 0:
        return 0.0
    return (to_cents(new) - old_cents) * 100 / old_cents


def detect_change(
    old_price: float,
    old_in_stock: bool,
    new_price: float,
    new_in_stock: bool,
    thresholds: ChangeThresholds,
) -> ChangeResult:
    """A price move counts only when it clears both the absolute and the percentage bar."""
    delta_cents = to_cents(new_price) - to_cents(old_price)
    delta_pct = percent_change(new_price, old_price)
    price_changed = (
        abs(delta_cents) >= to_cents(thresholds.min_absolute_change)
        and abs(delta_pct) >= thresholds.min_percentage_change
    )
    return ChangeResult(
        price_changed=price_changed,
        stock_changed=bool(new_in_stock) != bool(old_in_stock),
        price_delta=from_cents(delta_cents),
        price_delta_percent=delta_pct,
    )


class ChangeDetector:
    def __init__(
        self,
        engine: Engine,
        thresholds: ChangeThresholds,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.thresholds = thresholds
        self.clock = clock

    def record_observation(self, listing: Listing | int, new_price: float, new_in_stock: bool) -> ChangeResult:
        """Store a fresh observation.

        Material changes update the listing and append a history event; anything
        else only moves ``last_checked_at``. Raises ``ListingNotFound`` for an
        unknown id.
        """
        if new_price < 0:
            raise ValueError(f"Negative price {new_price}")
        now = self.clock()
        with self.engine.begin() as conn:
            listing_id = listing if isinstance(listing, int) else listing.id
            current = get_listing(conn, listing_id)
            result = detect_change(current.price, current.in_stock, new_price, new_in_stock, self.thresholds)
            if result.material:
                conn.execute(
                    update(listings)
                    .where(listings.c.id == current.id)
                    .values(price=new_price, in_stock=bool(new_in_stock), last_checked_at=now, updated_at=now)
                )
                conn.execute(
                    insert(listing_history).values(
                        listing_id=current.id, price=new_price, in_stock=bool(new_in_stock), recorded_at=now
                    )
                )
                logger.info(
                    "Listing %s changed: price %.2f -> %.2f (%+.1f%%), in stock %s -> %s",
                    current.id,
                    current.price,
                    new_price,
                    result.price_delta_percent,
                    current.in_stock,
                    new_in_stock,
                )
            else:
                conn.execute(update(listings).where(listings.c.id == current.id).values(last_checked_at=now))
        return result
