from datetime import timedelta

import pytest
from sqlalchemy import func, insert, select

from arbwatch.config import ChangeThresholds, MonitoringSettings, ProfitThresholds, RetentionSettings
from arbwatch.db.repo import get_listing
from arbwatch.db.schema import alert_records, listing_history
from arbwatch.ingest.models import ListingFacts
from arbwatch.jobs.monitoring import MonitoringService
from arbwatch.logic.changes import ChangeDetector
from conftest import NOW, StubCrawler


def make_service(engine, clock, crawler, batch_size=100):
    return MonitoringService(
        engine,
        crawler,
        ChangeDetector(engine, ChangeThresholds(), clock=clock),
        MonitoringSettings(recheck_after_hours=24, batch_size=batch_size),
        RetentionSettings(),
        ProfitThresholds(),
        clock=clock,
    )


def page(url, price, in_stock=True):
    return ListingFacts(site="walmart.com", listing_url=url, price=price, in_stock=in_stock)


def test_listings_to_monitor_oldest_first(engine, clock, add_product, add_listing):
    product_id = add_product()
    recent = add_listing(product_id, url="https://www.walmart.com/ip/recent", checked_at=NOW - timedelta(hours=2))
    old = add_listing(product_id, url="https://www.walmart.com/ip/old", checked_at=NOW - timedelta(days=3))
    older = add_listing(product_id, url="https://www.walmart.com/ip/older", checked_at=NOW - timedelta(days=5))
    service = make_service(engine, clock, StubCrawler(), batch_size=1)

    assert [listing.id for listing in service.listings_to_monitor(limit=10)] == [older, old]
    assert [listing.id for listing in service.listings_to_monitor()] == [older]
    assert recent not in [listing.id for listing in service.listings_to_monitor(limit=10)]


@pytest.mark.asyncio
async def test_monitoring_cycle_counts_outcomes(engine, clock, add_product, add_listing):
    product_id = add_product(price=40.0, fees=5.0)
    stale = NOW - timedelta(days=2)
    steady = add_listing(product_id, price=20.0, url="https://www.walmart.com/ip/steady", checked_at=stale)
    cheaper = add_listing(product_id, price=30.0, url="https://www.walmart.com/ip/cheaper", checked_at=stale)
    sold_out = add_listing(product_id, price=33.0, url="https://www.walmart.com/ip/sold-out", checked_at=stale)
    broken = add_listing(product_id, price=15.0, url="https://www.walmart.com/ip/broken", checked_at=stale)
    crawler = StubCrawler(
        pages={
            "https://www.walmart.com/ip/steady": page("https://www.walmart.com/ip/steady", 20.0),
            "https://www.walmart.com/ip/cheaper": page("https://www.walmart.com/ip/cheaper", 24.0),
            "https://www.walmart.com/ip/sold-out": page("https://www.walmart.com/ip/sold-out", 33.0, in_stock=False),
            "https://www.walmart.com/ip/broken": page("https://www.walmart.com/ip/broken", None),
        }
    )
    service = make_service(engine, clock, crawler)

    result = await service.run_monitoring_cycle()

    assert (result.checked, result.price_changes, result.stock_changes, result.failed) == (3, 1, 1, 1)
    assert result.profitable_opportunities == 2
    with engine.connect() as conn:
        assert get_listing(conn, cheaper).price == 24.0
        assert get_listing(conn, steady).last_checked_at == NOW
        assert get_listing(conn, broken).last_checked_at == stale
        assert get_listing(conn, broken).price == 15.0
        assert get_listing(conn, sold_out).in_stock is False
        assert conn.execute(select(func.count()).select_from(listing_history)).scalar() == 2


@pytest.mark.asyncio
async def test_one_failing_listing_does_not_stop_the_batch(engine, clock, add_product, add_listing):
    product_id = add_product()
    stale = NOW - timedelta(days=2)
    older = stale - timedelta(hours=1)
    garbled = add_listing(product_id, price=20.0, url="https://www.walmart.com/ip/garbled", checked_at=older)
    fine = add_listing(product_id, price=20.0, url="https://www.walmart.com/ip/fine", checked_at=stale)
    crawler = StubCrawler(pages={"https://www.walmart.com/ip/fine": page("https://www.walmart.com/ip/fine", 20.0)})

    async def fetch_facts(url):
        if url.endswith("garbled"):
            raise RuntimeError("decoder error")
        return crawler.pages.get(url)

    crawler.fetch_facts = fetch_facts
    service = make_service(engine, clock, crawler)

    result = await service.run_monitoring_cycle()

    assert (result.checked, result.failed) == (1, 1)
    with engine.connect() as conn:
        assert get_listing(conn, fine).last_checked_at == NOW
        assert get_listing(conn, garbled).last_checked_at == older


@pytest.mark.asyncio
async def test_monitoring_cycle_with_nothing_due(engine, clock, add_product, add_listing):
    add_listing(add_product())
    result = await make_service(engine, clock, StubCrawler()).run_monitoring_cycle()
    assert result.checked == 0
    assert result.failed == 0


def test_cleanup_old_data(engine, clock, add_product, add_listing):
    product_id = add_product()
    listing_id = add_listing(product_id)
    with engine.begin() as conn:
        conn.execute(
            insert(listing_history),
            [
                {"listing_id": listing_id, "price": 10.0, "in_stock": True, "recorded_at": NOW - timedelta(days=91)},
                {"listing_id": listing_id, "price": 11.0, "in_stock": True, "recorded_at": NOW - timedelta(days=10)},
            ],
        )
        conn.execute(
            insert(alert_records),
            [
                {"product_id": product_id, "alert_kind": "opportunity", "sent_at": NOW - timedelta(days=31)},
                {"product_id": product_id, "alert_kind": "opportunity", "sent_at": NOW - timedelta(days=1)},
            ],
        )

    result = make_service(engine, clock, StubCrawler()).cleanup_old_data()

    assert (result.history_deleted, result.alerts_deleted) == (1, 1)
    with engine.connect() as conn:
        assert conn.execute(select(listing_history.c.price)).scalars().all() == [11.0]
