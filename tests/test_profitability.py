import pytest
from sqlalchemy import select

from arbwatch.config import PricingSettings, ProfitThresholds
from arbwatch.db.repo import ListingNotFound, get_product
from arbwatch.db.schema import products
from arbwatch.logic.profitability import ProfitabilityService, evaluate
from conftest import FakeOracle

THRESHOLDS = ProfitThresholds()


@pytest.mark.parametrize(
    "marketplace_price, fees, sourcing_price",
    [(20.0, 3.0, 10.0), (99.99, 15.25, 42.5), (10.0, 2.0, 30.0), (0.0, 0.0, 5.0)],
)
def test_profit_is_price_minus_cost_minus_fees(marketplace_price, fees, sourcing_price):
    verdict = evaluate(marketplace_price, fees, sourcing_price, THRESHOLDS)
    assert verdict.profit == pytest.approx(marketplace_price - sourcing_price - fees)


def test_margin_is_zero_without_marketplace_price():
    verdict = evaluate(0.0, 0.0, 5.0, THRESHOLDS)
    assert verdict.margin_percent == 0
    assert not verdict.is_profitable


def test_thresholds_are_inclusive():
    at_margin = evaluate(100.0, 0.0, 85.0, THRESHOLDS)
    assert at_margin.margin_percent == 15.0
    assert at_margin.is_profitable

    at_profit = evaluate(25.0, 0.0, 20.0, THRESHOLDS)
    assert at_profit.profit == 5.0
    assert at_profit.is_profitable


def test_cent_amounts_exactly_at_the_thresholds_are_profitable():
    at_profit = evaluate(18.70, 3.70, 10.00, THRESHOLDS)
    assert at_profit.profit == 5.0
    assert at_profit.is_profitable

    at_margin = evaluate(33.40, 0.0, 28.39, THRESHOLDS)
    assert at_margin.profit == 5.01
    assert at_margin.margin_percent == 15.0
    assert at_margin.is_profitable

    assert not evaluate(33.40, 0.0, 28.40, THRESHOLDS).is_profitable


def test_both_thresholds_must_hold():
    high_margin_low_profit = evaluate(20.0, 0.0, 16.0, THRESHOLDS)
    assert high_margin_low_profit.margin_percent == 20.0
    assert not high_margin_low_profit.is_profitable

    low_margin_high_profit = evaluate(1000.0, 0.0, 900.0, THRESHOLDS)
    assert low_margin_high_profit.profit == 100.0
    assert not low_margin_high_profit.is_profitable


def test_example_pair():
    verdict = evaluate(20.0, 3.0, 10.0, THRESHOLDS)
    assert verdict.profit == 7.0
    assert verdict.margin_percent == 35.0
    assert verdict.is_profitable


def make_service(engine, clock, oracle, **pricing):
    return ProfitabilityService(engine, oracle, THRESHOLDS, PricingSettings(**pricing), clock=clock)


@pytest.mark.asyncio
async def test_market_economics_are_cached(engine, clock, add_product):
    product_id = add_product()
    oracle = FakeOracle({"X1": (20.0, 3.0)})
    service = make_service(engine, clock, oracle)

    with engine.connect() as conn:
        product = get_product(conn, product_id)
    first = await service.market_economics(product)
    with engine.connect() as conn:
        second = await service.market_economics(get_product(conn, product_id))

    assert (first.price, first.fees) == (20.0, 3.0)
    assert (second.price, second.fees) == (20.0, 3.0)
    assert oracle.price_calls == ["X1"]
    with engine.connect() as conn:
        row = conn.execute(select(products).where(products.c.id == product_id)).mappings().one()
    assert row["marketplace_price"] == 20.0
    assert row["pricing_updated_at"] == clock.now


@pytest.mark.asyncio
async def test_stale_cache_is_refreshed(engine, clock, add_product):
    product_id = add_product(price=18.0, fees=2.0, priced_at=clock.now)
    oracle = FakeOracle({"X1": (22.0, 3.0)})
    service = make_service(engine, clock, oracle, cache_max_age_hours=24)

    clock.advance(hours=23)
    with engine.connect() as conn:
        assert (await service.market_economics(get_product(conn, product_id))).price == 18.0
    clock.advance(hours=2)
    with engine.connect() as conn:
        assert (await service.market_economics(get_product(conn, product_id))).price == 22.0
    assert oracle.price_calls == ["X1"]


@pytest.mark.asyncio
async def test_zero_max_age_keeps_cache_until_invalidated(engine, clock, add_product):
    product_id = add_product(price=18.0, fees=2.0, priced_at=clock.now)
    oracle = FakeOracle({"X1": (22.0, 3.0)})
    service = make_service(engine, clock, oracle, cache_max_age_hours=0)

    clock.advance(days=365)
    with engine.connect() as conn:
        assert (await service.market_economics(get_product(conn, product_id))).price == 18.0

    service.invalidate(product_id)
    with engine.connect() as conn:
        assert (await service.market_economics(get_product(conn, product_id))).price == 22.0


@pytest.mark.asyncio
async def test_evaluate_listing(engine, clock, add_product, add_listing):
    listing_id = add_listing(add_product(price=20.0, fees=3.0), price=10.0)
    service = make_service(engine, clock, FakeOracle({}))

    opportunity = await service.evaluate_listing(listing_id)

    assert opportunity.verdict.profit == 7.0
    assert opportunity.verdict.is_profitable
    assert opportunity.listing.id == listing_id

    with pytest.raises(ListingNotFound):
        await service.evaluate_listing(999)


@pytest.mark.asyncio
async def test_backfill_counts_each_outcome(engine, clock, add_product, add_listing):
    add_listing(add_product("GOOD", "Good widget"), price=10.0)
    add_listing(add_product("BAD", "Thin margin widget"), price=19.0)
    add_listing(add_product("MISSING", "Unknown widget"), price=5.0)
    add_product("NOLISTING", "Not crawled yet")
    oracle = FakeOracle({"GOOD": (20.0, 3.0), "BAD": (20.0, 3.0), "NOLISTING": (20.0, 3.0)})
    service = make_service(engine, clock, oracle)

    result = await service.backfill()

    assert (result.processed, result.profitable, result.unprofitable, result.failed) == (3, 1, 1, 1)
    assert "NOLISTING" not in oracle.price_calls

    again = await service.backfill()
    assert again.processed == 1
    assert again.failed == 1


@pytest.mark.asyncio
async def test_backfill_survives_an_unexpected_oracle_error(engine, clock, add_product, add_listing):
    add_listing(add_product("ODD", "Odd widget"), price=10.0)
    add_listing(add_product("GOOD", "Good widget"), price=10.0)

    class GarbledOracle(FakeOracle):
        async def get_price(self, marketplace_id):
            if marketplace_id == "ODD":
                raise KeyError("access_token")
            return await super().get_price(marketplace_id)

    service = make_service(engine, clock, GarbledOracle({"GOOD": (20.0, 3.0)}))

    result = await service.backfill()

    assert (result.processed, result.profitable, result.failed) == (2, 1, 1)


def test_find_opportunities_sorted_by_profit(engine, clock, add_product, add_listing):
    small = add_product("SMALL", "Small win", price=20.0, fees=3.0)
    big = add_product("BIG", "Big win", price=100.0, fees=10.0)
    add_listing(small, price=10.0)
    add_listing(big, price=40.0)
    add_listing(big, price=95.0)
    add_listing(add_product("UNPRICED", "No economics yet"), price=1.0)
    service = make_service(engine, clock, FakeOracle({}))

    found = service.find_opportunities()

    assert [(opp.product.marketplace_id, opp.verdict.profit) for opp in found] == [("BIG", 50.0), ("SMALL", 7.0)]
    assert len(service.find_opportunities(limit=1)) == 1
