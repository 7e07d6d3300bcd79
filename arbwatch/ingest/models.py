"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping


@dataclass(slots=True)
class ProductInput:
    marketplace_id: str
    universal_code: str | None = None
    title: str | None = None


@dataclass(slots=True)
class Product:
    id: int
    marketplace_id: str
    universal_code: str | None
    title: str
    image_url: str | None
    marketplace_price: float | None
    marketplace_fees: float | None
    pricing_updated_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Product":
        return cls(
            id=row["id"],
            marketplace_id=row["marketplace_id"],
            universal_code=row["universal_code"],
            title=row["title"],
            image_url=row["image_url"],
            marketplace_price=row["marketplace_price"],
            marketplace_fees=row["marketplace_fees"],
            pricing_updated_at=row["pricing_updated_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(slots=True)
class Listing:
    id: int
    product_id: int
    site_id: str
    listing_url: str
    title: str | None
    price: float
    in_stock: bool
    color: str | None
    size: str | None
    image_url: str | None
    last_checked_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Listing":
        return cls(
            id=row["id"],
            product_id=row["product_id"],
            site_id=row["site_id"],
            listing_url=row["listing_url"],
            title=row["title"],
            price=row["price"],
            in_stock=bool(row["in_stock"]),
            color=row["color"],
            size=row["size"],
            image_url=row["image_url"],
            last_checked_at=row["last_checked_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(slots=True)
class ListingFacts:
    """What one product page says about an offer."""

    site: str
    listing_url: str
    title: str = ""
    price: float | None = None
    in_stock: bool = False
    stock_text: str = ""
    color: str = ""
    size: str = ""
    image_url: str = ""
