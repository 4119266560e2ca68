import random
import time
from decimal import Decimal

from price_oracle import BASE_PRICES, DEFAULT_BASE_PRICE, FallbackPriceOracle, MockPriceFeed, PriceRefresher


class StaticOracle:
    def __init__(self, prices):
        self.prices = prices

    def get_current_price(self, symbol):
        return self.prices.get(symbol)

    def get_all_current_prices(self):
        return dict(self.prices)


def test_seeded_feed_is_reproducible():
    a = MockPriceFeed(rng=random.Random(42))
    b = MockPriceFeed(rng=random.Random(42))
    assert [a.quote("TCS") for _ in range(5)] == [b.quote("TCS") for _ in range(5)]


def test_quotes_stay_within_five_percent_and_two_dp():
    feed = MockPriceFeed(rng=random.Random(1))
    for symbol, base in BASE_PRICES.items():
        for _ in range(20):
            price = feed.quote(symbol)
            assert base * Decimal("0.95") <= price <= base * Decimal("1.05")
            assert price.as_tuple().exponent == -2


def test_unknown_symbol_uses_default_base():
    feed = MockPriceFeed(rng=random.Random(3))
    price = feed.quote("UNLISTED")
    assert DEFAULT_BASE_PRICE * Decimal("0.95") <= price <= DEFAULT_BASE_PRICE * Decimal("1.05")


def test_fallback_prefers_primary_price():
    recorded = []
    oracle = FallbackPriceOracle(StaticOracle({"TCS": Decimal("3500")}), MockPriceFeed(), sink=recorded.append)

    assert oracle.get_current_price("TCS") == Decimal("3500")
    assert recorded == []


def test_fallback_quotes_when_primary_is_empty():
    recorded = []
    oracle = FallbackPriceOracle(StaticOracle({}), MockPriceFeed(rng=random.Random(5)), sink=recorded.append)

    price = oracle.get_current_price("INFY")
    assert price is not None
    assert len(recorded) == 1
    assert recorded[0].symbol == "INFY"
    assert recorded[0].price == price


def test_refresh_once_records_one_snapshot_per_symbol():
    recorded = []
    refresher = PriceRefresher(MockPriceFeed(rng=random.Random(9)), recorded.append, lambda: ["TCS", "INFY"], 3600)

    assert refresher.refresh_once() == 2
    assert [s.symbol for s in recorded] == ["TCS", "INFY"]
    assert all(s.source == "mock" for s in recorded)


def test_refresh_continues_past_a_failing_symbol():
    recorded = []

    def sink(snapshot):
        if snapshot.symbol == "TCS":
            raise RuntimeError("insert failed")
        recorded.append(snapshot)

    refresher = PriceRefresher(MockPriceFeed(), sink, lambda: ["TCS", "INFY"], 3600)

    assert refresher.refresh_once() == 1
    assert [s.symbol for s in recorded] == ["INFY"]


def test_refresher_runs_immediately_on_start_and_stops():
    recorded = []
    refresher = PriceRefresher(MockPriceFeed(), recorded.append, lambda: ["TCS"], 3600)

    refresher.start()
    deadline = time.time() + 5
    while not recorded and time.time() < deadline:
        time.sleep(0.01)
    refresher.stop()

    assert len(recorded) == 1
    assert refresher._thread is None
