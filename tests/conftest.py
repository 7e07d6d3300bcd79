from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from arbwatch.config import (
    CrawlerSettings,
    MonitoringSettings,
    SchedulerSettings,
    SearchEngine,
    Settings,
    load_site_config,
)
from arbwatch.db.migrate import run_migrations
from arbwatch.db.schema import listings, products
from arbwatch.db.session import configure_engine
from arbwatch.ingest.pricing import PricingError
from arbwatch.utils.retry import RetryPolicy

NOW = datetime(2024, 3, 1, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeOracle:
    def __init__(self, economics):
        self.economics = dict(economics)
        self.price_calls = []

    async def get_price(self, marketplace_id):
        self.price_calls.append(marketplace_id)
        if marketplace_id not in self.economics:
            raise PricingError(f"No valid price found for {marketplace_id}")
        return self.economics[marketplace_id][0]

    async def get_fees(self, marketplace_id, price):
        return self.economics[marketplace_id][1]


class FakeProvider:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    async def send(self, message):
        if not self.succeed:
            return False
        self.sent.append(message)
        return True


class StubCrawler:
    """Stands in for MatchingCrawler: canned search results and page facts."""

    def __init__(self, listings=None, pages=None):
        self.listings = listings or {}
        self.pages = pages or {}
        self.closed = False

    async def find_listings(self, product):
        return list(self.listings.get(product.marketplace_id, []))

    async def fetch_facts(self, url):
        return self.pages.get(url)

    async def close(self):
        self.closed = True


@pytest.fixture()
def engine():
    engine = configure_engine(
        create_engine(
            "sqlite://",
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


@pytest.fixture()
def crawler_settings():
    site_config = load_site_config()
    return CrawlerSettings(
        target_sites=("walmart.com", "target.com", "bestbuy.com"),
        search_engines=(SearchEngine(name="Test", url_template="https://search.test/search?q={query}"),),
        profiles=site_config["profiles"],
        concurrency=4,
        request_timeout=5.0,
        max_requests_per_crawl=20,
        host_rate=0,
        retry=RetryPolicy(max_retries=1, min_delay=0, max_delay=0),
    )


@pytest.fixture()
def settings(crawler_settings):
    return Settings(
        crawler=crawler_settings,
        monitoring=MonitoringSettings(recheck_after_hours=24.0, batch_size=50),
        scheduler=SchedulerSettings(job_timeout_seconds=5.0),
    )


@pytest.fixture()
def add_product(engine):
    def _add(marketplace_id="X1", title="Widget Pro", universal_code=None, price=None, fees=None, priced_at=None):
        with engine.begin() as conn:
            return conn.execute(
                insert(products).values(
                    marketplace_id=marketplace_id,
                    universal_code=universal_code,
                    title=title,
                    marketplace_price=price,
                    marketplace_fees=fees,
                    pricing_updated_at=priced_at if priced_at is not None else (NOW if price is not None else None),
                    created_at=NOW,
                    updated_at=NOW,
                )
            ).inserted_primary_key[0]

    return _add


@pytest.fixture()
def add_listing(engine):
    def _add(product_id, price=10.0, in_stock=True, url=None, site="walmart.com", checked_at=NOW):
        with engine.begin() as conn:
            return conn.execute(
                insert(listings).values(
                    product_id=product_id,
                    site_id=site,
                    listing_url=url or f"https://www.{site}/ip/item/{product_id}-{price}",
                    title="Widget Pro",
                    price=price,
                    in_stock=in_stock,
                    last_checked_at=checked_at,
                    created_at=checked_at,
                    updated_at=checked_at,
                )
            ).inserted_primary_key[0]

    return _add
