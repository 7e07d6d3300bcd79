"""Re-check known listings and prune old history."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine

from arbwatch.config import MonitoringSettings, ProfitThresholds, RetentionSettings
from arbwatch.db.schema import alert_records, listing_history, listings, products
from arbwatch.ingest.crawler import MatchingCrawler
from arbwatch.ingest.models import Listing
from arbwatch.logic.changes import ChangeDetector
from arbwatch.logic.profitability import evaluate
from arbwatch.utils.dates import days_ago, hours_ago, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitoringResult:
    checked: int = 0
    price_changes: int = 0
    stock_changes: int = 0
    failed: int = 0
    profitable_opportunities: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class CleanupResult:
    history_deleted: int = 0
    alerts_deleted: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class MonitoringService:
    def __init__(
        self,
        engine: Engine,
        crawler: MatchingCrawler,
        detector: ChangeDetector,
        settings: MonitoringSettings,
        retention: RetentionSettings,
        profit: ProfitThresholds,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.crawler = crawler
        self.detector = detector
        self.settings = settings
        self.retention = retention
        self.profit = profit
        self.clock = clock

    def listings_to_monitor(self, limit: int | None = None) -> list[Listing]:
        """Listings not checked within the recheck window, oldest first."""
        cutoff = hours_ago(self.settings.recheck_after_hours, now=self.clock())
        query = (
            select(listings)
            .where(listings.c.last_checked_at < cutoff)
            .order_by(listings.c.last_checked_at)
            .limit(limit or self.settings.batch_size)
        )
        with self.engine.connect() as conn:
            return [Listing.from_row(row) for row in conn.execute(query).mappings()]

    async def run_monitoring_cycle(self) -> MonitoringResult:
        result = MonitoringResult()
        due = self.listings_to_monitor()
        logger.info("Monitoring %s listings", len(due))
        for listing in due:
            try:
                facts = await self.crawler.fetch_facts(listing.listing_url)
                if facts is None or facts.price is None:
                    logger.warning("No price for listing %s at %s", listing.id, listing.listing_url)
                    result.failed += 1
                    continue
                change = self.detector.record_observation(listing, facts.price, facts.in_stock)
            except Exception:
                logger.exception("Monitoring failed for listing %s", listing.id)
                result.failed += 1
                continue
            result.checked += 1
            if change.price_changed:
                result.price_changes += 1
            if change.stock_changed:
                result.stock_changes += 1
            if self._is_profitable(listing.product_id, facts.price):
                result.profitable_opportunities += 1
        logger.info(
            "Monitoring cycle: %s checked, %s price changes, %s stock changes, %s failed",
            result.checked,
            result.price_changes,
            result.stock_changes,
            result.failed,
        )
        return result

    def cleanup_old_data(self) -> CleanupResult:
        now = self.clock()
        with self.engine.begin() as conn:
            history = conn.execute(
                delete(listing_history).where(
                    listing_history.c.recorded_at < days_ago(self.retention.history_days, now=now)
                )
            )
            alerts = conn.execute(
                delete(alert_records).where(alert_records.c.sent_at < days_ago(self.retention.alert_days, now=now))
            )
        result = CleanupResult(history_deleted=history.rowcount, alerts_deleted=alerts.rowcount)
        logger.info(
            "Cleanup removed %s history rows and %s alert records", result.history_deleted, result.alerts_deleted
        )
        return result

    def _is_profitable(self, product_id: int, sourcing_price: float) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(products.c.marketplace_price, products.c.marketplace_fees).where(products.c.id == product_id)
            ).first()
        if row is None or row.marketplace_price is None or row.marketplace_fees is None:
            return False
        return evaluate(row.marketplace_price, row.marketplace_fees, sourcing_price, self.profit).is_profitable
