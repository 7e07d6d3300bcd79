"""Recurring job bookkeeping: what is due, run it, record it, reschedule it."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from arbwatch.config import SchedulerSettings
from arbwatch.db.schema import job_runs, scheduled_jobs
from arbwatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


class JobType(str, enum.Enum):
    MONITORING_CYCLE = "monitoring_cycle"
    DATA_CLEANUP = "data_cleanup"
    PRODUCT_DISCOVERY = "product_discovery"
    DAILY_DIGEST = "daily_digest"


class JobStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


JobHandler = Callable[[], Awaitable[Mapping[str, Any] | None]]


class JobNotFound(LookupError):
    pass


@dataclass(slots=True)
class ScheduledJob:
    id: int
    job_type: JobType
    status: JobStatus
    interval_hours: int
    last_run_at: datetime | None
    next_run_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ScheduledJob":
        return cls(
            id=row["id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            interval_hours=row["interval_hours"],
            last_run_at=row["last_run_at"],
            next_run_at=row["next_run_at"],
        )


@dataclass(slots=True)
class JobRunResult:
    job_type: JobType
    status: RunStatus
    run_id: int | None = None
    summary: Mapping[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class ProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[JobRunResult] = field(default_factory=list)


class Scheduler:
    """Runs every due job once per call, sequentially.

    Each run is recorded in ``job_runs``; whatever the outcome the job's
    ``next_run_at`` moves to the run start plus its interval. A ``running`` row
    older than ``job_timeout_seconds`` is treated as abandoned.
    """

    def __init__(
        self,
        engine: Engine,
        handlers: Mapping[JobType, JobHandler],
        settings: SchedulerSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        missing = [job_type.value for job_type in JobType if job_type not in handlers]
        if missing:
            raise ValueError(f"No handler for job types: {', '.join(missing)}")
        self.engine = engine
        self.handlers = dict(handlers)
        self.settings = settings
        self.clock = clock
        self._lock = asyncio.Lock()

    def default_jobs(self) -> tuple[tuple[JobType, int], ...]:
        return (
            (JobType.MONITORING_CYCLE, self.settings.monitoring_interval_hours),
            (JobType.DATA_CLEANUP, self.settings.cleanup_interval_hours),
        )

    def bootstrap(self) -> int:
        """Create the default jobs when the table is empty. Returns the number created."""
        with self.engine.begin() as conn:
            if conn.execute(select(scheduled_jobs.c.id).limit(1)).first() is not None:
                return 0
            for job_type, interval in self.default_jobs():
                self._insert_job(conn, job_type, interval)
        logger.info("Bootstrapped %s scheduled jobs", len(self.default_jobs()))
        return len(self.default_jobs())

    def ensure_job(self, job_type: JobType, interval_hours: int) -> ScheduledJob:
        with self.engine.begin() as conn:
            row = self._job_row(conn, job_type)
            if row is None:
                self._insert_job(conn, job_type, interval_hours)
                row = self._job_row(conn, job_type)
        return ScheduledJob.from_row(row)

    def get_job(self, job_type: JobType) -> ScheduledJob:
        with self.engine.connect() as conn:
            row = self._job_row(conn, job_type)
        if row is None:
            raise JobNotFound(f"No scheduled job {job_type.value}")
        return ScheduledJob.from_row(row)

    def list_jobs(self) -> list[ScheduledJob]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(scheduled_jobs).order_by(scheduled_jobs.c.next_run_at)).mappings()
            return [ScheduledJob.from_row(row) for row in rows]

    def get_due_jobs(self) -> list[ScheduledJob]:
        query = (
            select(scheduled_jobs)
            .where(scheduled_jobs.c.status == JobStatus.ACTIVE.value, scheduled_jobs.c.next_run_at <= self.clock())
            .order_by(scheduled_jobs.c.next_run_at)
        )
        with self.engine.connect() as conn:
            return [ScheduledJob.from_row(row) for row in conn.execute(query).mappings()]

    def pause(self, job_type: JobType) -> ScheduledJob:
        return self._set_status(job_type, JobStatus.PAUSED)

    def resume(self, job_type: JobType) -> ScheduledJob:
        return self._set_status(job_type, JobStatus.ACTIVE)

    async def run_job(self, job: ScheduledJob) -> JobRunResult:
        started = self.clock()
        run_id = self._open_run(job, started)
        if run_id is None:
            logger.warning("Skipping %s: a run is already in progress", job.job_type.value)
            return JobRunResult(job_type=job.job_type, status=RunStatus.SKIPPED)

        handler = self.handlers[job.job_type]
        summary: Mapping[str, Any] | None = None
        error: str | None = None
        try:
            summary = await asyncio.wait_for(handler(), timeout=self.settings.job_timeout_seconds)
        except asyncio.TimeoutError:
            error = f"Timed out after {self.settings.job_timeout_seconds:.0f} seconds"
            logger.error("Job %s %s", job.job_type.value, error.lower())
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Job %s failed", job.job_type.value)

        status = RunStatus.FAILED if error else RunStatus.COMPLETED
        ended = self.clock()
        with self.engine.begin() as conn:
            conn.execute(
                update(job_runs)
                .where(job_runs.c.id == run_id)
                .values(
                    status=status.value,
                    ended_at=ended,
                    result_summary=json.dumps(dict(summary), default=str) if summary is not None else None,
                    error_message=error,
                )
            )
            conn.execute(
                update(scheduled_jobs)
                .where(scheduled_jobs.c.id == job.id)
                .values(
                    last_run_at=started,
                    next_run_at=started + timedelta(hours=job.interval_hours),
                    updated_at=ended,
                )
            )
        logger.info("Job %s %s", job.job_type.value, status.value)
        return JobRunResult(job_type=job.job_type, status=status, run_id=run_id, summary=summary, error=error)

    async def process_all_due_jobs(self) -> ProcessResult:
        async with self._lock:
            result = ProcessResult()
            for job in self.get_due_jobs():
                outcome = await self.run_job(job)
                result.results.append(outcome)
                if outcome.status is RunStatus.SKIPPED:
                    result.skipped += 1
                    continue
                result.processed += 1
                if outcome.status is RunStatus.COMPLETED:
                    result.succeeded += 1
                else:
                    result.failed += 1
        logger.info(
            "Processed %s due jobs: %s succeeded, %s failed, %s skipped",
            result.processed,
            result.succeeded,
            result.failed,
            result.skipped,
        )
        return result

    def _open_run(self, job: ScheduledJob, started: datetime) -> int | None:
        stale_before = started - timedelta(seconds=self.settings.job_timeout_seconds)
        with self.engine.begin() as conn:
            running = conn.execute(
                select(job_runs.c.id, job_runs.c.started_at).where(
                    job_runs.c.job_id == job.id, job_runs.c.status == RunStatus.RUNNING.value
                )
            ).all()
            for row in running:
                if row.started_at >= stale_before:
                    return None
                conn.execute(
                    update(job_runs)
                    .where(job_runs.c.id == row.id)
                    .values(status=RunStatus.FAILED.value, ended_at=started, error_message="Abandoned run timed out")
                )
                logger.warning("Marked abandoned run %s of %s as failed", row.id, job.job_type.value)
            return conn.execute(
                insert(job_runs).values(job_id=job.id, status=RunStatus.RUNNING.value, started_at=started)
            ).inserted_primary_key[0]

    def _set_status(self, job_type: JobType, status: JobStatus) -> ScheduledJob:
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(scheduled_jobs)
                .where(scheduled_jobs.c.job_type == job_type.value)
                .values(status=status.value, updated_at=self.clock())
            )
            if updated.rowcount == 0:
                raise JobNotFound(f"No scheduled job {job_type.value}")
            row = self._job_row(conn, job_type)
        return ScheduledJob.from_row(row)

    def _insert_job(self, conn: Connection, job_type: JobType, interval_hours: int) -> None:
        now = self.clock()
        conn.execute(
            insert(scheduled_jobs).values(
                job_type=job_type.value,
                status=JobStatus.ACTIVE.value,
                interval_hours=interval_hours,
                next_run_at=now + timedelta(hours=interval_hours),
                created_at=now,
                updated_at=now,
            )
        )

    @staticmethod
    def _job_row(conn: Connection, job_type: JobType) -> Mapping[str, Any] | None:
        return conn.execute(select(scheduled_jobs).where(scheduled_jobs.c.job_type == job_type.value)).mappings().first()
