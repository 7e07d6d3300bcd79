import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import insert, select, update

from arbwatch.config import SchedulerSettings
from arbwatch.db.schema import job_runs, scheduled_jobs
from arbwatch.jobs.scheduler import JobStatus, JobType, RunStatus, Scheduler


def make_scheduler(engine, clock, overrides=None, timeout=5.0):
    calls = []

    def handler_for(job_type):
        async def handler():
            calls.append(job_type)
            return {"job": job_type.value}

        return handler

    handlers = {job_type: handler_for(job_type) for job_type in JobType}
    handlers.update(overrides or {})
    scheduler = Scheduler(engine, handlers, SchedulerSettings(job_timeout_seconds=timeout), clock=clock)
    return scheduler, calls


def runs(engine):
    with engine.connect() as conn:
        return conn.execute(select(job_runs).order_by(job_runs.c.id)).mappings().all()


def test_every_job_type_needs_a_handler(engine, clock):
    with pytest.raises(ValueError, match="daily_digest"):
        Scheduler(
            engine,
            {job_type: None for job_type in JobType if job_type is not JobType.DAILY_DIGEST},
            SchedulerSettings(),
            clock=clock,
        )


def test_bootstrap_creates_default_jobs_once(engine, clock):
    scheduler, _ = make_scheduler(engine, clock)

    assert scheduler.bootstrap() == 2
    assert scheduler.bootstrap() == 0

    jobs = {job.job_type: job for job in scheduler.list_jobs()}
    assert set(jobs) == {JobType.MONITORING_CYCLE, JobType.DATA_CLEANUP}
    assert jobs[JobType.MONITORING_CYCLE].interval_hours == 24
    assert jobs[JobType.DATA_CLEANUP].interval_hours == 168
    assert jobs[JobType.MONITORING_CYCLE].next_run_at == clock.now + timedelta(hours=24)
    assert all(job.status is JobStatus.ACTIVE for job in jobs.values())


def test_ensure_job_adds_optional_jobs(engine, clock):
    scheduler, _ = make_scheduler(engine, clock)
    scheduler.bootstrap()

    job = scheduler.ensure_job(JobType.DAILY_DIGEST, 24)
    again = scheduler.ensure_job(JobType.DAILY_DIGEST, 12)

    assert job.id == again.id
    assert again.interval_hours == 24
    assert len(scheduler.list_jobs()) == 3


def test_due_jobs_are_active_and_oldest_first(engine, clock):
    scheduler, _ = make_scheduler(engine, clock)
    scheduler.bootstrap()
    scheduler.ensure_job(JobType.PRODUCT_DISCOVERY, 6)
    assert scheduler.get_due_jobs() == []

    clock.advance(hours=200)
    due = [job.job_type for job in scheduler.get_due_jobs()]
    assert due == [JobType.PRODUCT_DISCOVERY, JobType.MONITORING_CYCLE, JobType.DATA_CLEANUP]

    scheduler.pause(JobType.MONITORING_CYCLE)
    assert JobType.MONITORING_CYCLE not in [job.job_type for job in scheduler.get_due_jobs()]
    scheduler.resume(JobType.MONITORING_CYCLE)
    assert JobType.MONITORING_CYCLE in [job.job_type for job in scheduler.get_due_jobs()]


@pytest.mark.asyncio
async def test_successful_run_is_recorded(engine, clock):
    scheduler, calls = make_scheduler(engine, clock)
    scheduler.bootstrap()
    clock.advance(hours=24)
    job = scheduler.get_job(JobType.MONITORING_CYCLE)
    started = clock.now

    result = await scheduler.run_job(job)

    assert result.status is RunStatus.COMPLETED
    assert calls == [JobType.MONITORING_CYCLE]
    run = runs(engine)[0]
    assert run["status"] == "completed"
    assert json.loads(run["result_summary"]) == {"job": "monitoring_cycle"}
    assert run["error_message"] is None
    refreshed = scheduler.get_job(JobType.MONITORING_CYCLE)
    assert refreshed.last_run_at == started
    assert refreshed.next_run_at == started + timedelta(hours=24)


@pytest.mark.asyncio
async def test_failing_job_is_rescheduled_at_its_normal_interval(engine, clock):
    async def explode():
        raise RuntimeError("listing store unreachable")

    scheduler, _ = make_scheduler(engine, clock, {JobType.MONITORING_CYCLE: explode})
    scheduler.bootstrap()
    clock.advance(hours=30)
    started = clock.now

    result = await scheduler.run_job(scheduler.get_job(JobType.MONITORING_CYCLE))

    assert result.status is RunStatus.FAILED
    run = runs(engine)[0]
    assert run["status"] == "failed"
    assert run["error_message"] == "listing store unreachable"
    assert run["ended_at"] is not None
    assert scheduler.get_job(JobType.MONITORING_CYCLE).next_run_at == started + timedelta(hours=24)


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_other_due_jobs(engine, clock):
    async def explode():
        raise RuntimeError("boom")

    scheduler, calls = make_scheduler(engine, clock, {JobType.MONITORING_CYCLE: explode})
    scheduler.bootstrap()
    clock.advance(hours=200)

    result = await scheduler.process_all_due_jobs()

    assert (result.processed, result.succeeded, result.failed, result.skipped) == (2, 1, 1, 0)
    assert calls == [JobType.DATA_CLEANUP]
    assert scheduler.get_due_jobs() == []


@pytest.mark.asyncio
async def test_job_that_runs_too_long_fails(engine, clock):
    async def hang():
        await asyncio.sleep(5)

    scheduler, _ = make_scheduler(engine, clock, {JobType.DATA_CLEANUP: hang}, timeout=0.05)
    scheduler.bootstrap()
    clock.advance(hours=168)

    result = await scheduler.run_job(scheduler.get_job(JobType.DATA_CLEANUP))

    assert result.status is RunStatus.FAILED
    assert "Timed out" in runs(engine)[0]["error_message"]


@pytest.mark.asyncio
async def test_running_job_is_not_started_twice(engine, clock):
    scheduler, calls = make_scheduler(engine, clock)
    scheduler.bootstrap()
    clock.advance(hours=24)
    job = scheduler.get_job(JobType.MONITORING_CYCLE)
    with engine.begin() as conn:
        conn.execute(insert(job_runs).values(job_id=job.id, status="running", started_at=clock.now))

    result = await scheduler.run_job(job)

    assert result.status is RunStatus.SKIPPED
    assert calls == []
    assert len(runs(engine)) == 1


@pytest.mark.asyncio
async def test_abandoned_run_is_closed_and_job_runs(engine, clock):
    scheduler, calls = make_scheduler(engine, clock, timeout=60)
    scheduler.bootstrap()
    clock.advance(hours=24)
    job = scheduler.get_job(JobType.MONITORING_CYCLE)
    with engine.begin() as conn:
        conn.execute(
            insert(job_runs).values(job_id=job.id, status="running", started_at=clock.now - timedelta(minutes=5))
        )

    result = await scheduler.run_job(job)

    assert result.status is RunStatus.COMPLETED
    assert calls == [JobType.MONITORING_CYCLE]
    statuses = [run["status"] for run in runs(engine)]
    assert statuses == ["failed", "completed"]


@pytest.mark.asyncio
async def test_paused_jobs_are_not_processed(engine, clock):
    scheduler, calls = make_scheduler(engine, clock)
    scheduler.bootstrap()
    with engine.begin() as conn:
        conn.execute(update(scheduled_jobs).values(status="paused"))
    clock.advance(hours=500)

    result = await scheduler.process_all_due_jobs()

    assert result.processed == 0
    assert calls == []
