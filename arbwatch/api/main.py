"""FastAPI application for ingestion, crawls, the cycle trigger and read-only views."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine

from arbwatch.config import Settings, load_settings
from arbwatch.db.repo import ProductNotFound
from arbwatch.db.session import create_engine_from_env
from arbwatch.ingest import upsert_products
from arbwatch.ingest.models import ProductInput
from arbwatch.jobs.cycle import Pipeline
from arbwatch.logging_config import configure_logging
from arbwatch.utils.dates import format_timestamp

logger = logging.getLogger(__name__)

configure_logging()
app = FastAPI(title="Arbitrage Watch API")


class ProductPayload(BaseModel):
    marketplace_id: str = Field(min_length=1)
    universal_code: str | None = None
    title: str | None = None


class IngestRequest(BaseModel):
    products: list[ProductPayload]


class IngestResponse(BaseModel):
    received: int
    inserted: int


class CrawlResponse(BaseModel):
    marketplace_id: str
    found: int
    created: int
    updated: int


class OpportunityResponse(BaseModel):
    marketplace_id: str
    title: str
    site_id: str
    listing_url: str
    sourcing_price: float
    marketplace_price: float
    marketplace_fees: float
    profit: float
    margin_percent: float
    in_stock: bool


class JobResponse(BaseModel):
    job_type: str
    status: str
    interval_hours: int
    last_run_at: str
    next_run_at: str


def get_engine() -> Engine:
    return create_engine_from_env()


def get_settings() -> Settings:
    return load_settings()


async def get_pipeline(
    engine: Engine = Depends(get_engine), settings: Settings = Depends(get_settings)
) -> AsyncIterator[Pipeline]:
    pipeline = Pipeline(engine, settings)
    try:
        yield pipeline
    finally:
        await pipeline.close()


@app.post("/products", response_model=IngestResponse)
async def ingest_products(payload: IngestRequest, engine: Engine = Depends(get_engine)) -> IngestResponse:
    records = [ProductInput(**item.model_dump()) for item in payload.products]
    inserted = upsert_products(engine, records)
    return IngestResponse(received=len(records), inserted=inserted)


@app.post("/products/{marketplace_id}/crawl", response_model=CrawlResponse)
async def crawl_product(marketplace_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> CrawlResponse:
    try:
        outcome = await pipeline.discovery.crawl_product(marketplace_id)
    except ProductNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return CrawlResponse(
        marketplace_id=outcome.marketplace_id,
        found=outcome.found,
        created=outcome.created,
        updated=outcome.updated,
    )


@app.post("/cycle")
async def trigger_cycle(pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    report = await pipeline.run_cycle()
    return report.as_dict()


@app.get("/opportunities", response_model=list[OpportunityResponse])
async def list_opportunities(
    limit: int = Query(20, ge=1, le=200), pipeline: Pipeline = Depends(get_pipeline)
) -> list[OpportunityResponse]:
    return [
        OpportunityResponse(
            marketplace_id=opp.product.marketplace_id,
            title=opp.product.title,
            site_id=opp.listing.site_id,
            listing_url=opp.listing.listing_url,
            sourcing_price=opp.listing.price,
            marketplace_price=opp.marketplace_price,
            marketplace_fees=opp.marketplace_fees,
            profit=round(opp.verdict.profit, 2),
            margin_percent=round(opp.verdict.margin_percent, 2),
            in_stock=opp.listing.in_stock,
        )
        for opp in pipeline.profitability.find_opportunities(limit)
    ]


@app.get("/jobs", response_model=list[JobResponse])
async def list_jobs(pipeline: Pipeline = Depends(get_pipeline)) -> list[JobResponse]:
    return [
        JobResponse(
            job_type=job.job_type.value,
            status=job.status.value,
            interval_hours=job.interval_hours,
            last_run_at=format_timestamp(job.last_run_at),
            next_run_at=format_timestamp(job.next_run_at),
        )
        for job in pipeline.scheduler.list_jobs()
    ]
