import random
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from errors import InstrumentUnavailable, InsufficientHoldings, InvalidRewardRequest, PriceUnavailable
from fee_engine import FeeSchedule
from ledger import is_balanced
from models import REVERSAL, Instrument, PriceSnapshot, RewardRequest
from price_oracle import FallbackPriceOracle, MockPriceFeed
from reward_engine import RewardBook, grant_reward

SCHEDULE = FeeSchedule()


class FixedPrice:
    """price oracle that always answers the same price."""

    def __init__(self, price):
        self.price = price

    def get_current_price(self, symbol):
        return self.price


def _make_book(prices=None):
    """helper to create a fresh in-memory book for each test."""
    book = RewardBook(
        [
            Instrument("TCS", "Tata Consultancy Services Limited"),
            Instrument("INFY", "Infosys Limited"),
            Instrument("YESBANK", "Yes Bank Limited", is_active=False),
        ]
    )
    now = datetime.now(timezone.utc)
    if prices is None:
        prices = {"TCS": "3500.00", "INFY": "1500.00"}
    for symbol, price in prices.items():
        book.record_price(PriceSnapshot(symbol, Decimal(price), now))
    return book


def _request(key="grant-1", user="u1", symbol="TCS", quantity="2.5", **kwargs):
    return RewardRequest(
        idempotency_key=key,
        user_id=user,
        symbol=symbol,
        quantity=Decimal(quantity),
        **kwargs,
    )


def test_grant_prices_persists_and_posts():
    book = _make_book()
    outcome = grant_reward(_request(), book, SCHEDULE)
    record = outcome.record

    assert outcome.replayed is False
    assert outcome.warnings == []

    assert record.quantity == Decimal("2.500000")
    assert record.price_per_unit == Decimal("3500.0000")
    assert record.gross_value == Decimal("8750.0000")
    assert record.fees["brokerage"] == Decimal("4.3750")
    assert record.fees["tax_on_brokerage"] == Decimal("0.7875")
    assert record.total_fees == Decimal("30.5375")
    assert record.total_cost == Decimal("8780.5375")

    holding = book.get_holding("u1", "TCS")
    assert holding.total_quantity == Decimal("2.5")
    assert holding.average_cost == Decimal("3500.0000")

    postings = book.postings_for_reward(record.id)
    assert len(postings) == 4
    assert is_balanced(postings)


def test_same_key_twice_returns_first_record():
    book = _make_book()
    first = grant_reward(_request(), book, SCHEDULE)

    # change the price; a replay must not reprice
    book.record_price(PriceSnapshot("TCS", Decimal("9999.00"), datetime.now(timezone.utc)))
    second = grant_reward(_request(), book, SCHEDULE)

    assert second.replayed is True
    assert second.record == first.record
    assert len(book.all_rewards()) == 1
    assert book.get_holding("u1", "TCS").total_quantity == Decimal("2.5")
    assert len(book.postings) == 4


def test_replay_ignores_a_different_payload():
    book = _make_book()
    first = grant_reward(_request(), book, SCHEDULE)
    second = grant_reward(_request(quantity="100"), book, SCHEDULE)

    assert second.replayed is True
    assert second.record.quantity == first.record.quantity


def test_concurrent_requests_with_same_key_create_one_reward():
    book = _make_book()

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(lambda _: grant_reward(_request(), book, SCHEDULE), range(16)))

    assert len(book.all_rewards()) == 1
    assert len({o.record.id for o in outcomes}) == 1
    assert sum(1 for o in outcomes if not o.replayed) == 1
    assert book.get_holding("u1", "TCS").total_quantity == Decimal("2.5")
    assert len(book.postings) == 4


def test_concurrent_grants_on_same_pair_lose_no_update():
    """
    2 @ 100 and 3 @ 200 racing on an empty position -> 5 units, average 160.
    """
    book = _make_book()
    jobs = [
        (_request(key="a", symbol="INFY", quantity="2"), FixedPrice(Decimal("100"))),
        (_request(key="b", symbol="INFY", quantity="3"), FixedPrice(Decimal("200"))),
    ]

    with ThreadPoolExecutor(max_workers=2) as pool:
        list(pool.map(lambda job: grant_reward(job[0], book, SCHEDULE, price_oracle=job[1]), jobs))

    holding = book.get_holding("u1", "INFY")
    assert holding.total_quantity == Decimal("5")
    assert holding.average_cost == Decimal("160.0000")


def test_many_concurrent_grants_on_same_pair():
    book = _make_book()
    oracle = FixedPrice(Decimal("100"))

    def grant(i):
        return grant_reward(_request(key=f"k{i}", symbol="INFY", quantity="1"), book, SCHEDULE, price_oracle=oracle)

    with ThreadPoolExecutor(max_workers=10) as pool:
        list(pool.map(grant, range(50)))

    assert book.get_holding("u1", "INFY").total_quantity == Decimal("50")
    assert len(book.all_rewards()) == 50


def test_inactive_instrument_is_rejected():
    book = _make_book()

    with pytest.raises(InstrumentUnavailable):
        grant_reward(_request(symbol="YESBANK"), book, SCHEDULE, price_oracle=FixedPrice(Decimal("20")))

    assert book.all_rewards() == []
    assert book.holdings == {}


def test_unknown_instrument_is_rejected():
    book = _make_book()
    with pytest.raises(InstrumentUnavailable):
        grant_reward(_request(symbol="NOPE"), book, SCHEDULE)
    assert book.all_rewards() == []


def test_symbol_is_case_insensitive():
    book = _make_book()
    outcome = grant_reward(_request(symbol=" tcs "), book, SCHEDULE)
    assert outcome.record.symbol == "TCS"


def test_missing_price_is_retryable_and_leaves_nothing():
    book = _make_book(prices={})

    with pytest.raises(PriceUnavailable) as exc:
        grant_reward(_request(), book, SCHEDULE)
    assert exc.value.retryable is True
    assert book.all_rewards() == []

    # once a price shows up the same key goes through
    book.record_price(PriceSnapshot("TCS", Decimal("3500.00"), datetime.now(timezone.utc)))
    outcome = grant_reward(_request(), book, SCHEDULE)
    assert outcome.replayed is False
    assert outcome.record.gross_value == Decimal("8750.0000")


@pytest.mark.parametrize("price", [Decimal("0"), Decimal("-5")])
def test_non_positive_price_is_unavailable(price):
    book = _make_book()
    with pytest.raises(PriceUnavailable):
        grant_reward(_request(), book, SCHEDULE, price_oracle=FixedPrice(price))
    assert book.all_rewards() == []


def test_fallback_oracle_quotes_and_records_snapshot():
    book = _make_book(prices={})
    oracle = FallbackPriceOracle(book, MockPriceFeed(rng=random.Random(7)), sink=book.record_price)

    outcome = grant_reward(_request(), book, SCHEDULE, price_oracle=oracle)

    assert len(book.price_snapshots) == 1
    snapshot = book.price_snapshots[0]
    assert snapshot.source == "mock-fallback"
    assert outcome.record.price_per_unit == snapshot.price
    assert Decimal("3325") <= snapshot.price <= Decimal("3675")


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": "0"},
        {"quantity": "-1"},
        {"quantity": "0.0000001"},
        {"key": "  "},
        {"user": ""},
        {"symbol": ""},
        {"kind": "gift"},
    ],
)
def test_invalid_requests_are_rejected(overrides):
    book = _make_book()
    with pytest.raises(InvalidRewardRequest):
        grant_reward(_request(**overrides), book, SCHEDULE)
    assert book.all_rewards() == []


def test_grant_worth_nothing_is_rejected():
    book = _make_book()
    with pytest.raises(InvalidRewardRequest):
        grant_reward(_request(quantity="0.000001"), book, SCHEDULE, price_oracle=FixedPrice(Decimal("10")))


def test_naive_granted_at_is_treated_as_utc():
    book = _make_book()
    outcome = grant_reward(_request(granted_at=datetime(2025, 1, 1, 9, 30)), book, SCHEDULE)
    assert outcome.record.granted_at == datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc)


def test_holdings_failure_keeps_reward_and_warns(monkeypatch):
    book = _make_book()

    def broken(*args, **kwargs):
        raise RuntimeError("holdings store down")

    monkeypatch.setattr(book, "apply_to_holding", broken)
    outcome = grant_reward(_request(), book, SCHEDULE)

    assert len(book.all_rewards()) == 1
    assert book.get_holding("u1", "TCS") is None
    assert len(outcome.warnings) == 1
    assert "holdings update failed" in outcome.warnings[0]
    # ledger still posted
    assert is_balanced(book.postings_for_reward(outcome.record.id))


def test_ledger_failure_keeps_reward_and_warns(monkeypatch):
    book = _make_book()

    def broken(postings):
        raise RuntimeError("ledger store down")

    monkeypatch.setattr(book, "insert_postings", broken)
    outcome = grant_reward(_request(), book, SCHEDULE)

    assert len(book.all_rewards()) == 1
    assert book.get_holding("u1", "TCS").total_quantity == Decimal("2.5")
    assert book.postings == []
    assert any("ledger posting failed" in w for w in outcome.warnings)


def test_reversal_removes_units_at_average_cost():
    book = _make_book()
    grant_reward(_request(key="g1", symbol="INFY", quantity="5"), book, SCHEDULE)

    outcome = grant_reward(
        _request(key="r1", symbol="INFY", quantity="2", kind=REVERSAL, reason="clawback"),
        book,
        SCHEDULE,
    )
    record = outcome.record

    assert record.kind == REVERSAL
    assert record.quantity == Decimal("-2.000000")
    assert record.price_per_unit == Decimal("1500.0000")
    assert record.gross_value == Decimal("-3000.0000")
    assert record.total_fees == Decimal("0")

    holding = book.get_holding("u1", "INFY")
    assert holding.total_quantity == Decimal("3")
    assert holding.average_cost == Decimal("1500.0000")

    postings = book.postings_for_reward(record.id)
    assert len(postings) == 2
    assert is_balanced(postings)


def test_reversal_beyond_holding_leaves_no_trace():
    book = _make_book()
    grant_reward(_request(key="g1", symbol="INFY", quantity="1"), book, SCHEDULE)

    with pytest.raises(InsufficientHoldings):
        grant_reward(_request(key="r1", symbol="INFY", quantity="2", kind=REVERSAL), book, SCHEDULE)

    assert book.get_reward_by_key("r1") is None
    assert book.get_holding("u1", "INFY").total_quantity == Decimal("1")

    with pytest.raises(InsufficientHoldings):
        grant_reward(_request(key="r2", symbol="TCS", quantity="1", kind=REVERSAL), book, SCHEDULE)


def test_reversal_is_idempotent_too():
    book = _make_book()
    grant_reward(_request(key="g1", symbol="INFY", quantity="5"), book, SCHEDULE)

    first = grant_reward(_request(key="r1", symbol="INFY", quantity="2", kind=REVERSAL), book, SCHEDULE)
    second = grant_reward(_request(key="r1", symbol="INFY", quantity="2", kind=REVERSAL), book, SCHEDULE)

    assert second.replayed is True
    assert second.record == first.record
    assert book.get_holding("u1", "INFY").total_quantity == Decimal("3")
