"""Seed the database with catalogue products and the default scheduled jobs."""

from __future__ import annotations

import argparse
import asyncio
import pathlib

from dotenv import load_dotenv

from arbwatch.config import load_settings
from arbwatch.db.migrate import run_migrations
from arbwatch.db.session import create_engine_from_env
from arbwatch.ingest import load_product_inputs, upsert_products
from arbwatch.jobs.cycle import Pipeline
from arbwatch.jobs.scheduler import JobType
from arbwatch.logging_config import configure_logging

DEFAULT_PRODUCTS = pathlib.Path(__file__).with_name("products.example.yml")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", nargs="?", type=pathlib.Path, default=DEFAULT_PRODUCTS)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--with-discovery", action="store_true", help="also schedule product discovery")
    parser.add_argument("--with-digest", action="store_true", help="also schedule the daily digest")
    args = parser.parse_args()

    load_dotenv()
    configure_logging()
    engine = create_engine_from_env()
    run_migrations(engine)
    inserted = upsert_products(engine, load_product_inputs(args.path, limit=args.limit))

    pipeline = Pipeline(engine, load_settings())
    scheduler = pipeline.scheduler
    scheduler.bootstrap()
    if args.with_discovery:
        scheduler.ensure_job(JobType.PRODUCT_DISCOVERY, 24)
    if args.with_digest:
        scheduler.ensure_job(JobType.DAILY_DIGEST, 24)
    asyncio.run(pipeline.close())
    print(f"Seed complete: {inserted} new products")


if __name__ == "__main__":
    main()
