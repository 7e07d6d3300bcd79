"""Table definitions shared by every component."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("marketplace_id", Text, nullable=False, unique=True),
    Column("universal_code", Text),
    Column("title", Text, nullable=False),
    Column("image_url", Text),
    Column("marketplace_price", Float),
    Column("marketplace_fees", Float),
    Column("pricing_updated_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("idx_products_universal_code", "universal_code"),
)

listings = Table(
    "listings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("site_id", Text, nullable=False),
    Column("listing_url", Text, nullable=False),
    Column("title", Text),
    Column("price", Float, nullable=False),
    Column("in_stock", Boolean, nullable=False, default=False),
    Column("color", Text),
    Column("size", Text),
    Column("image_url", Text),
    Column("last_checked_at", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("product_id", "listing_url", name="uq_listings_product_url"),
    CheckConstraint("price >= 0", name="ck_listings_price_non_negative"),
    Index("idx_listings_product_id", "product_id"),
    Index("idx_listings_last_checked_at", "last_checked_at"),
)

listing_history = Table(
    "listing_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("listing_id", Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False),
    Column("price", Float, nullable=False),
    Column("in_stock", Boolean, nullable=False),
    Column("recorded_at", DateTime, nullable=False),
    Index("idx_listing_history_listing_id", "listing_id"),
    Index("idx_listing_history_recorded_at", "recorded_at"),
)

alert_records = Table(
    "alert_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
    Column("alert_kind", Text, nullable=False),
    Column("recipient", Text),
    Column("sent_at", DateTime, nullable=False),
    Index("idx_alert_records_product_sent", "product_id", "sent_at"),
)

scheduled_jobs = Table(
    "scheduled_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("job_type", Text, nullable=False, unique=True),
    Column("status", Text, nullable=False, default="active"),
    Column("interval_hours", Integer, nullable=False),
    Column("last_run_at", DateTime),
    Column("next_run_at", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("idx_scheduled_jobs_next_run_at", "next_run_at"),
)

job_runs = Table(
    "job_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("job_id", Integer, ForeignKey("scheduled_jobs.id", ondelete="CASCADE"), nullable=False),
    Column("status", Text, nullable=False),
    Column("started_at", DateTime, nullable=False),
    Column("ended_at", DateTime),
    Column("result_summary", Text),
    Column("error_message", Text),
    Index("idx_job_runs_job_id", "job_id"),
)
