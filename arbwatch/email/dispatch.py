"""Decide whether an opportunity warrants an email, send it and remember that it was sent."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from arbwatch.config import AlertSettings
from arbwatch.db.schema import alert_records
from arbwatch.email.render import EmailRenderError, render_email
from arbwatch.logic.profitability import Opportunity, ProfitabilityService
from arbwatch.logic.ranking import rank_opportunities, summarize
from arbwatch.utils.dates import format_timestamp, hours_ago, utcnow
from arbwatch.utils.esp import EmailMessage, EmailProvider

logger = logging.getLogger(__name__)


class AlertKind(str, enum.Enum):
    OPPORTUNITY = "opportunity"
    DIGEST = "digest"


class AlertOutcome(str, enum.Enum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    NOT_PROFITABLE = "not_profitable"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(slots=True)
class AlertBatchResult:
    sent: int = 0
    suppressed: int = 0
    failed: int = 0


@dataclass(slots=True)
class DigestResult:
    outcome: AlertOutcome
    included: int = 0


class AlertDispatcher:
    """Per-product deduplicated alerts plus the periodic digest.

    Profitability is taken from the verdict attached to each opportunity; an
    ``alert_records`` row is written only after the provider reports success.
    """

    def __init__(
        self,
        engine: Engine,
        provider: EmailProvider,
        profitability: ProfitabilityService,
        settings: AlertSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self.profitability = profitability
        self.settings = settings
        self.clock = clock

    def was_recently_alerted(self, product_id: int) -> bool:
        cutoff = hours_ago(self.settings.min_hours_between_alerts, now=self.clock())
        query = select(alert_records.c.id).where(
            alert_records.c.product_id == product_id, alert_records.c.sent_at >= cutoff
        )
        with self.engine.connect() as conn:
            return conn.execute(query.limit(1)).first() is not None

    async def send_opportunity_alert(self, opportunity: Opportunity) -> AlertOutcome:
        if not self.settings.immediate_alerts:
            return AlertOutcome.DISABLED
        if not opportunity.verdict.is_profitable:
            return AlertOutcome.NOT_PROFITABLE
        product = opportunity.product
        if self.was_recently_alerted(product.id):
            logger.debug("Alert for %s suppressed by an earlier alert", product.marketplace_id)
            return AlertOutcome.SUPPRESSED
        context = {
            "subject": f"{self.settings.opportunity_subject}: {product.title}",
            "product": product,
            "listing": opportunity.listing,
            "verdict": opportunity.verdict,
            "marketplace_price": opportunity.marketplace_price,
            "marketplace_fees": opportunity.marketplace_fees,
            "checked_at": format_timestamp(opportunity.listing.last_checked_at),
        }
        try:
            subject, html = render_email(AlertKind.OPPORTUNITY.value, context)
        except EmailRenderError:
            return AlertOutcome.FAILED
        sent = await self.provider.send(EmailMessage(to=self.settings.recipient, subject=subject, html=html))
        if not sent:
            return AlertOutcome.FAILED
        self._record([product.id], AlertKind.OPPORTUNITY)
        logger.info(
            "Alerted %s: %s profit %.2f (%.1f%%)",
            product.marketplace_id,
            opportunity.listing.site_id,
            opportunity.verdict.profit,
            opportunity.verdict.margin_percent,
        )
        return AlertOutcome.SENT

    async def send_opportunity_alerts(self, limit: int | None = None) -> AlertBatchResult:
        """Alert on current opportunities, best profit first, stopping after ``limit`` sends."""
        result = AlertBatchResult()
        if not self.settings.immediate_alerts:
            return result
        cap = limit or self.settings.max_opportunities_per_email
        for opportunity in self.profitability.find_opportunities():
            if result.sent >= cap:
                break
            outcome = await self.send_opportunity_alert(opportunity)
            if outcome is AlertOutcome.SENT:
                result.sent += 1
            elif outcome is AlertOutcome.SUPPRESSED:
                result.suppressed += 1
            elif outcome is AlertOutcome.FAILED:
                result.failed += 1
        logger.info(
            "Alert batch: %s sent, %s suppressed, %s failed", result.sent, result.suppressed, result.failed
        )
        return result

    async def send_digest(self) -> DigestResult:
        if not self.settings.daily_summary:
            return DigestResult(outcome=AlertOutcome.DISABLED)
        entries = rank_opportunities(
            self.profitability.find_opportunities(), limit=self.settings.max_opportunities_per_email
        )
        if not entries:
            logger.info("Digest skipped, no profitable opportunities")
            return DigestResult(outcome=AlertOutcome.NOT_PROFITABLE)
        context = {
            "subject": f"{self.settings.digest_subject}: {len(entries)} opportunities",
            "intro": f"Top opportunities as of {format_timestamp(self.clock())}.",
            "entries": entries,
            "summary": summarize(entries),
        }
        try:
            subject, html = render_email(AlertKind.DIGEST.value, context)
        except EmailRenderError:
            return DigestResult(outcome=AlertOutcome.FAILED)
        if not await self.provider.send(EmailMessage(to=self.settings.recipient, subject=subject, html=html)):
            return DigestResult(outcome=AlertOutcome.FAILED)
        self._record((entry.product_id for entry in entries), AlertKind.DIGEST)
        logger.info("Digest sent with %s opportunities", len(entries))
        return DigestResult(outcome=AlertOutcome.SENT, included=len(entries))

    def _record(self, product_ids: Iterable[int], kind: AlertKind) -> None:
        now = self.clock()
        with self.engine.begin() as conn:
            for product_id in product_ids:
                conn.execute(
                    insert(alert_records).values(
                        product_id=product_id, alert_kind=kind.value, recipient=self.settings.recipient, sent_at=now
                    )
                )
