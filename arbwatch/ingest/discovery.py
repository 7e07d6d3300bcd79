"""Run the matching crawler for catalogue products and store what it finds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import exists, insert, select, update
from sqlalchemy.engine import Engine

from arbwatch.db.repo import ProductNotFound, find_listing, get_product_by_marketplace_id
from arbwatch.db.schema import listing_history, listings, products
from arbwatch.ingest.crawler import MatchingCrawler
from arbwatch.ingest.models import ListingFacts, Product
from arbwatch.logic.changes import ChangeDetector
from arbwatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CrawlOutcome:
    marketplace_id: str
    found: int = 0
    created: int = 0
    updated: int = 0


@dataclass(slots=True)
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    outcomes: list[CrawlOutcome] = field(default_factory=list)


class DiscoveryService:
    def __init__(
        self,
        engine: Engine,
        crawler: MatchingCrawler,
        detector: ChangeDetector,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.crawler = crawler
        self.detector = detector
        self.clock = clock

    async def crawl_product(self, marketplace_id: str) -> CrawlOutcome:
        """Crawl one product. Raises ``ProductNotFound``; page-level failures are absorbed by the crawler."""
        with self.engine.connect() as conn:
            product = get_product_by_marketplace_id(conn, marketplace_id)
        facts = await self.crawler.find_listings(product)
        outcome = CrawlOutcome(marketplace_id=marketplace_id, found=len(facts))
        for item in facts:
            if self._store(product, item):
                outcome.created += 1
            else:
                outcome.updated += 1
        with self.engine.begin() as conn:
            conn.execute(update(products).where(products.c.id == product.id).values(updated_at=self.clock()))
        logger.info(
            "Stored %s listings for %s (%s new, %s re-observed)",
            outcome.found,
            marketplace_id,
            outcome.created,
            outcome.updated,
        )
        return outcome

    async def crawl_batch(self, marketplace_ids: Iterable[str]) -> BatchResult:
        result = BatchResult()
        for marketplace_id in marketplace_ids:
            try:
                result.outcomes.append(await self.crawl_product(marketplace_id))
            except ProductNotFound as exc:
                logger.warning("%s", exc)
                result.failed += 1
            except Exception:
                logger.exception("Crawl failed for %s", marketplace_id)
                result.failed += 1
            else:
                result.succeeded += 1
        logger.info("Crawl batch finished: %s succeeded, %s failed", result.succeeded, result.failed)
        return result

    async def crawl_unprocessed(self, limit: int = 10) -> BatchResult:
        """Crawl products that have no listings yet."""
        has_listing = exists().where(listings.c.product_id == products.c.id)
        query = select(products.c.marketplace_id).where(~has_listing).order_by(products.c.created_at).limit(limit)
        with self.engine.connect() as conn:
            pending = [row.marketplace_id for row in conn.execute(query)]
        if not pending:
            logger.info("No unprocessed products")
            return BatchResult()
        return await self.crawl_batch(pending)

    def _store(self, product: Product, item: ListingFacts) -> bool:
        """Insert a new listing with its first history row, or pass a known one to the change detector."""
        with self.engine.connect() as conn:
            existing = find_listing(conn, product.id, item.listing_url)
        if existing is not None:
            self.detector.record_observation(existing, item.price, item.in_stock)
            return False
        now = self.clock()
        with self.engine.begin() as conn:
            listing_id = conn.execute(
                insert(listings).values(
                    product_id=product.id,
                    site_id=item.site,
                    listing_url=item.listing_url,
                    title=item.title or None,
                    price=item.price,
                    in_stock=item.in_stock,
                    color=item.color or None,
                    size=item.size or None,
                    image_url=item.image_url or None,
                    last_checked_at=now,
                    created_at=now,
                    updated_at=now,
                )
            ).inserted_primary_key[0]
            conn.execute(
                insert(listing_history).values(
                    listing_id=listing_id, price=item.price, in_stock=item.in_stock, recorded_at=now
                )
            )
            if item.image_url and not product.image_url:
                conn.execute(update(products).where(products.c.id == product.id).values(image_url=item.image_url))
                product.image_url = item.image_url
        return True
