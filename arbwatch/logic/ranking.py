"""Ranking logic for digest opportunities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from arbwatch.logic.profitability import Opportunity


@dataclass(slots=True)
class DigestEntry:
    rank: int
    product_id: int
    product_title: str
    marketplace_id: str
    site_id: str
    listing_url: str
    sourcing_price: float
    marketplace_price: float
    marketplace_fees: float
    profit: float
    margin_percent: float


@dataclass(slots=True)
class DigestSummary:
    count: int
    total_profit: float
    average_margin: float


def rank_opportunities(opportunities: Sequence[Opportunity], limit: int = 10) -> list[DigestEntry]:
    """Best listing per product, ordered by profit then margin, capped at ``limit``."""
    best: dict[int, Opportunity] = {}
    for opp in opportunities:
        current = best.get(opp.product.id)
        if current is None or _sort_key(opp) > _sort_key(current):
            best[opp.product.id] = opp
    ordered = sorted(best.values(), key=_sort_key, reverse=True)
    entries: list[DigestEntry] = []
    for rank, opp in enumerate(ordered[:limit], start=1):
        entries.append(
            DigestEntry(
                rank=rank,
                product_id=opp.product.id,
                product_title=opp.product.title,
                marketplace_id=opp.product.marketplace_id,
                site_id=opp.listing.site_id,
                listing_url=opp.listing.listing_url,
                sourcing_price=opp.listing.price,
                marketplace_price=opp.marketplace_price,
                marketplace_fees=opp.marketplace_fees,
                profit=round(opp.verdict.profit, 2),
                margin_percent=round(opp.verdict.margin_percent, 2),
            )
        )
    return entries


def summarize(entries: Sequence[DigestEntry]) -> DigestSummary:
    if not entries:
        return DigestSummary(count=0, total_profit=0.0, average_margin=0.0)
    return DigestSummary(
        count=len(entries),
        total_profit=round(sum(e.profit for e in entries), 2),
        average_margin=round(sum(e.margin_percent for e in entries) / len(entries), 2),
    )


def _sort_key(opp: Opportunity) -> tuple[float, float]:
    return (opp.verdict.profit, opp.verdict.margin_percent)
