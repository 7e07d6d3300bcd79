"""Driving loop: due jobs, monitoring, profitability backfill, alerts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.engine import Engine

from arbwatch.config import Settings, load_settings
from arbwatch.db.session import create_engine_from_env
from arbwatch.email.dispatch import AlertBatchResult, AlertDispatcher, AlertOutcome
from arbwatch.ingest.crawler import MatchingCrawler
from arbwatch.ingest.discovery import DiscoveryService
from arbwatch.ingest.pricing import PricingOracle, SellingPartnerClient
from arbwatch.jobs.monitoring import MonitoringResult, MonitoringService
from arbwatch.jobs.scheduler import JobType, ProcessResult, Scheduler
from arbwatch.logic.changes import ChangeDetector
from arbwatch.logic.profitability import BackfillResult, ProfitabilityService
from arbwatch.utils.dates import utcnow
from arbwatch.utils.esp import EmailProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    jobs: ProcessResult | None = None
    monitoring: MonitoringResult | None = None
    backfill: BackfillResult | None = None
    alerts: AlertBatchResult | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "jobs": {
                "processed": self.jobs.processed,
                "succeeded": self.jobs.succeeded,
                "failed": self.jobs.failed,
                "skipped": self.jobs.skipped,
            }
            if self.jobs
            else None,
            "monitoring": asdict(self.monitoring) if self.monitoring else None,
            "backfill": asdict(self.backfill) if self.backfill else None,
            "alerts": asdict(self.alerts) if self.alerts else None,
            "errors": dict(self.errors),
        }


class Pipeline:
    """Every component wired from one settings object and one engine."""

    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        *,
        oracle: PricingOracle | None = None,
        provider: EmailProvider | None = None,
        crawler: MatchingCrawler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.oracle = oracle or SellingPartnerClient(settings.pricing)
        self.provider = provider or EmailProvider(
            from_email=settings.alerts.from_email, from_name=settings.alerts.from_name
        )
        self.crawler = crawler or MatchingCrawler(settings.crawler)
        self.detector = ChangeDetector(engine, settings.changes, clock=clock)
        self.discovery = DiscoveryService(engine, self.crawler, self.detector, clock=clock)
        self.profitability = ProfitabilityService(
            engine, self.oracle, settings.profit, settings.pricing, clock=clock
        )
        self.monitoring = MonitoringService(
            engine,
            self.crawler,
            self.detector,
            settings.monitoring,
            settings.retention,
            settings.profit,
            clock=clock,
        )
        self.dispatcher = AlertDispatcher(engine, self.provider, self.profitability, settings.alerts, clock=clock)
        self._job_monitoring: MonitoringResult | None = None
        self.scheduler = Scheduler(
            engine,
            {
                JobType.MONITORING_CYCLE: self._monitoring_job,
                JobType.DATA_CLEANUP: self._cleanup_job,
                JobType.PRODUCT_DISCOVERY: self._discovery_job,
                JobType.DAILY_DIGEST: self._digest_job,
            },
            settings.scheduler,
            clock=clock,
        )

    async def close(self) -> None:
        await self.crawler.close()
        close = getattr(self.oracle, "close", None)
        if close is not None:
            await close()

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        self._job_monitoring = None
        try:
            self.scheduler.bootstrap()
            report.jobs = await self.scheduler.process_all_due_jobs()
        except Exception as exc:
            self._stage_failed(report, "jobs", exc)
        if self._job_monitoring is not None:
            logger.info("Monitoring already ran as a scheduled job this cycle")
            report.monitoring = self._job_monitoring
        else:
            try:
                report.monitoring = await self.monitoring.run_monitoring_cycle()
            except Exception as exc:
                self._stage_failed(report, "monitoring", exc)
        try:
            report.backfill = await self.profitability.backfill()
        except Exception as exc:
            self._stage_failed(report, "backfill", exc)
        try:
            report.alerts = await self.dispatcher.send_opportunity_alerts()
        except Exception as exc:
            self._stage_failed(report, "alerts", exc)
        logger.info("Cycle finished: %s", report.as_dict())
        return report

    async def _monitoring_job(self) -> dict[str, int]:
        result = await self.monitoring.run_monitoring_cycle()
        self._job_monitoring = result
        return result.as_dict()

    async def _cleanup_job(self) -> dict[str, int]:
        return self.monitoring.cleanup_old_data().as_dict()

    async def _discovery_job(self) -> dict[str, int]:
        result = await self.discovery.crawl_unprocessed()
        return {"succeeded": result.succeeded, "failed": result.failed}

    async def _digest_job(self) -> dict[str, Any]:
        result = await self.dispatcher.send_digest()
        if result.outcome is AlertOutcome.FAILED:
            raise RuntimeError("Digest email could not be sent")
        return {"outcome": result.outcome.value, "included": result.included}

    @staticmethod
    def _stage_failed(report: CycleReport, stage: str, exc: Exception) -> None:
        logger.exception("Cycle stage %s failed", stage)
        report.errors[stage] = str(exc) or exc.__class__.__name__


async def run_cycle(settings: Settings | None = None, engine: Engine | None = None) -> CycleReport:
    pipeline = Pipeline(engine or create_engine_from_env(), settings or load_settings())
    try:
        return await pipeline.run_cycle()
    finally:
        await pipeline.close()


if __name__ == "__main__":
    from arbwatch.logging_config import configure_logging

    configure_logging()
    asyncio.run(run_cycle())
