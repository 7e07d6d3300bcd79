"""Celery configuration for the recurring trigger."""

from __future__ import annotations

import os

from celery import Celery

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
cycle_interval_hours = float(os.environ.get("CYCLE_INTERVAL_HOURS", "4"))

celery_app = Celery("arbwatch", broker=broker_url, backend=backend_url, include=["arbwatch.jobs.cycle"])
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "arbitrage-cycle": {
        "task": "arbwatch.jobs.cycle.run_cycle",
        "schedule": cycle_interval_hours * 3600,
    },
}


@celery_app.task(name="arbwatch.jobs.cycle.run_cycle")
def run_cycle_task():  # pragma: no cover - executed by worker
    import asyncio

    from arbwatch.jobs.cycle import run_cycle
    from arbwatch.logging_config import configure_logging

    configure_logging()
    return asyncio.run(run_cycle()).as_dict()
