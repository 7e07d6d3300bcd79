"""Ingestion helpers."""

from __future__ import annotations

import logging
import pathlib
from datetime import datetime
from typing import Iterable

import yaml
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from arbwatch.db.schema import products
from arbwatch.ingest.models import ProductInput
from arbwatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


def load_product_inputs(path: pathlib.Path, limit: int | None = None) -> list[ProductInput]:
    data = yaml.safe_load(path.read_text()) or []
    records = [ProductInput(**item) for item in data]
    if limit:
        return records[:limit]
    return records


def upsert_products(engine: Engine, records: Iterable[ProductInput], *, now: datetime | None = None) -> int:
    """Insert unseen marketplace IDs and fill blanks on known ones. Returns the number inserted."""
    ts = now or utcnow()
    inserted = 0
    with engine.begin() as conn:
        for record in records:
            marketplace_id = record.marketplace_id.strip()
            if not marketplace_id:
                continue
            existing = conn.execute(
                select(products.c.id, products.c.universal_code).where(products.c.marketplace_id == marketplace_id)
            ).first()
            if existing is None:
                conn.execute(
                    insert(products).values(
                        marketplace_id=marketplace_id,
                        universal_code=record.universal_code or None,
                        title=(record.title or "").strip() or f"Product {marketplace_id}",
                        created_at=ts,
                        updated_at=ts,
                    )
                )
                inserted += 1
                continue
            changes = {}
            if record.universal_code and not existing.universal_code:
                changes["universal_code"] = record.universal_code
            if record.title and record.title.strip():
                changes["title"] = record.title.strip()
            if changes:
                conn.execute(update(products).where(products.c.id == existing.id).values(**changes, updated_at=ts))
    logger.info("Ingested %s new products", inserted)
    return inserted
