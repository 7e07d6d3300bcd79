"""Profit and margin of buying on a retail site and selling on the marketplace."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.engine import Engine

from arbwatch.config import PricingSettings, ProfitThresholds
from arbwatch.db.repo import get_listing, get_product
from arbwatch.db.schema import listings, products
from arbwatch.ingest.models import Listing, Product
from arbwatch.ingest.pricing import PricingError, PricingOracle
from arbwatch.utils.dates import utcnow
from arbwatch.utils.money import from_cents, to_cents

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProfitVerdict:
    profit: float
    margin_percent: float
    is_profitable: bool


@dataclass(slots=True)
class MarketEconomics:
    price: float
    fees: float


@dataclass(slots=True)
class Opportunity:
    product: Product
    listing: Listing
    marketplace_price: float
    marketplace_fees: float
    verdict: ProfitVerdict


@dataclass(slots=True)
class BackfillResult:
    processed: int = 0
    profitable: int = 0
    unprofitable: int = 0
    failed: int = 0


def evaluate(
    marketplace_price: float,
    marketplace_fees: float,
    sourcing_price: float,
    thresholds: ProfitThresholds,
) -> ProfitVerdict:
    price_cents = to_cents(marketplace_price)
    profit_cents = price_cents - to_cents(sourcing_price) - to_cents(marketplace_fees)
    margin = profit_cents * 100 / price_cents if price_cents > 0 else 0.0
    return ProfitVerdict(
        profit=from_cents(profit_cents),
        margin_percent=margin,
        is_profitable=(
            margin >= thresholds.min_margin_percent and profit_cents >= to_cents(thresholds.min_profit_amount)
        ),
    )


class ProfitabilityService:
    """Caches marketplace price/fees on the product and evaluates listings against them.

    The cache is refreshed from the oracle once it is older than
    ``PricingSettings.cache_max_age_hours`` (``0`` keeps it forever) or after
    :meth:`invalidate`.
    """

    def __init__(
        self,
        engine: Engine,
        oracle: PricingOracle,
        thresholds: ProfitThresholds,
        pricing: PricingSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.oracle = oracle
        self.thresholds = thresholds
        self.pricing = pricing
        self.clock = clock

    def is_cache_fresh(self, product: Product) -> bool:
        if product.marketplace_price is None or product.marketplace_fees is None:
            return False
        if self.pricing.cache_max_age_hours <= 0:
            return True
        if product.pricing_updated_at is None:
            return False
        return self.clock() - product.pricing_updated_at < timedelta(hours=self.pricing.cache_max_age_hours)

    async def market_economics(self, product: Product) -> MarketEconomics:
        """Cached price and fees, fetched from the oracle when missing or stale. Raises ``PricingError``."""
        if self.is_cache_fresh(product):
            return MarketEconomics(price=product.marketplace_price, fees=product.marketplace_fees)
        price = await self.oracle.get_price(product.marketplace_id)
        fees = await self.oracle.get_fees(product.marketplace_id, price)
        now = self.clock()
        with self.engine.begin() as conn:
            conn.execute(
                update(products)
                .where(products.c.id == product.id)
                .values(marketplace_price=price, marketplace_fees=fees, pricing_updated_at=now, updated_at=now)
            )
        product.marketplace_price = price
        product.marketplace_fees = fees
        product.pricing_updated_at = now
        logger.info("Cached marketplace economics for %s: price %.2f, fees %.2f", product.marketplace_id, price, fees)
        return MarketEconomics(price=price, fees=fees)

    def invalidate(self, product_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(products)
                .where(products.c.id == product_id)
                .values(marketplace_price=None, marketplace_fees=None, pricing_updated_at=None)
            )

    async def evaluate_listing(self, listing_id: int) -> Opportunity:
        with self.engine.connect() as conn:
            listing = get_listing(conn, listing_id)
            product = get_product(conn, listing.product_id)
        economics = await self.market_economics(product)
        return Opportunity(
            product=product,
            listing=listing,
            marketplace_price=economics.price,
            marketplace_fees=economics.fees,
            verdict=evaluate(economics.price, economics.fees, listing.price, self.thresholds),
        )

    async def backfill(self, limit: int = 100) -> BackfillResult:
        """Fill or refresh cached economics for products that have listings."""
        result = BackfillResult()
        for product in self._products_needing_pricing(limit):
            result.processed += 1
            try:
                economics = await self.market_economics(product)
            except PricingError as exc:
                logger.warning("Pricing failed for %s: %s", product.marketplace_id, exc)
                result.failed += 1
                continue
            except Exception:
                logger.exception("Pricing lookup raised for %s", product.marketplace_id)
                result.failed += 1
                continue
            with self.engine.connect() as conn:
                best = conn.execute(
                    select(listings.c.price).where(listings.c.product_id == product.id).order_by(listings.c.price)
                ).scalar()
            verdict = evaluate(economics.price, economics.fees, best, self.thresholds)
            if verdict.is_profitable:
                result.profitable += 1
            else:
                result.unprofitable += 1
        logger.info(
            "Profitability backfill: %s processed, %s profitable, %s unprofitable, %s failed",
            result.processed,
            result.profitable,
            result.unprofitable,
            result.failed,
        )
        return result

    def find_opportunities(self, limit: int | None = None) -> list[Opportunity]:
        """Profitable listing/product pairs from cached economics, best profit first."""
        query = (
            select(listings, products.c.marketplace_price, products.c.marketplace_fees)
            .join(products, products.c.id == listings.c.product_id)
            .where(products.c.marketplace_price.is_not(None), products.c.marketplace_fees.is_not(None))
        )
        found: list[Opportunity] = []
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
            product_cache: dict[int, Product] = {}
            for row in rows:
                verdict = evaluate(row["marketplace_price"], row["marketplace_fees"], row["price"], self.thresholds)
                if not verdict.is_profitable:
                    continue
                product_id = row["product_id"]
                if product_id not in product_cache:
                    product_cache[product_id] = get_product(conn, product_id)
                found.append(
                    Opportunity(
                        product=product_cache[product_id],
                        listing=Listing.from_row(row),
                        marketplace_price=row["marketplace_price"],
                        marketplace_fees=row["marketplace_fees"],
                        verdict=verdict,
                    )
                )
        found.sort(key=lambda opp: opp.verdict.profit, reverse=True)
        return found[:limit] if limit else found

    def _products_needing_pricing(self, limit: int) -> list[Product]:
        has_listing = exists().where(listings.c.product_id == products.c.id)
        conditions = [products.c.marketplace_price.is_(None), products.c.marketplace_fees.is_(None)]
        if self.pricing.cache_max_age_hours > 0:
            cutoff = self.clock() - timedelta(hours=self.pricing.cache_max_age_hours)
            conditions.append(products.c.pricing_updated_at.is_(None))
            conditions.append(products.c.pricing_updated_at < cutoff)
        query = select(products).where(and_(has_listing, or_(*conditions))).order_by(products.c.id).limit(limit)
        with self.engine.connect() as conn:
            return [Product.from_row(row) for row in conn.execute(query).mappings()]
