"""Lookups shared by the crawler, monitoring, profitability and alert code."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.engine import Connection

from arbwatch.db.schema import listings, products
from arbwatch.ingest.models import Listing, Product


class ProductNotFound(LookupError):
    pass


class ListingNotFound(LookupError):
    pass


def get_product(conn: Connection, product_id: int) -> Product:
    row = conn.execute(select(products).where(products.c.id == product_id)).mappings().first()
    if row is None:
        raise ProductNotFound(f"Product {product_id} not found")
    return Product.from_row(row)


def get_product_by_marketplace_id(conn: Connection, marketplace_id: str) -> Product:
    row = conn.execute(select(products).where(products.c.marketplace_id == marketplace_id)).mappings().first()
    if row is None:
        raise ProductNotFound(f"Product with marketplace ID {marketplace_id} not found")
    return Product.from_row(row)


def get_listing(conn: Connection, listing_id: int) -> Listing:
    row = conn.execute(select(listings).where(listings.c.id == listing_id)).mappings().first()
    if row is None:
        raise ListingNotFound(f"Listing {listing_id} not found")
    return Listing.from_row(row)


def find_listing(conn: Connection, product_id: int, listing_url: str) -> Listing | None:
    row = (
        conn.execute(
            select(listings).where(listings.c.product_id == product_id, listings.c.listing_url == listing_url)
        )
        .mappings()
        .first()
    )
    return Listing.from_row(row) if row is not None else None


def listings_for_product(conn: Connection, product_id: int) -> list[Listing]:
    rows = conn.execute(select(listings).where(listings.c.product_id == product_id).order_by(listings.c.id)).mappings()
    return [Listing.from_row(row) for row in rows]
