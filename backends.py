"""
storage backends behind the HTTP layer.

both expose the same calls (grant, today, historical, stats, portfolio,
reconcile, price refresher); the memory one keeps everything in a
RewardBook, the postgres one goes through db.repositories.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import Settings
from db.db import get_conn
from db.repositories import get_holdings_for_user, get_instruments, get_rewards_for_user, list_active_symbols
from models import GrantOutcome, Instrument, RewardRecord, RewardRequest
from price_oracle import FallbackPriceOracle, MockPriceFeed, PriceRefresher
from queries import day_bounds, historical_value, portfolio, today_rewards, user_stats
from reconcile import reconcile_book, reconcile_db
from reward_engine import RewardBook, grant_reward, utcnow
from reward_engine_db import PostgresPriceOracle, grant_reward_db

logger = logging.getLogger(__name__)


def default_instruments() -> List[Instrument]:
    return [
        Instrument("RELIANCE", "Reliance Industries Limited"),
        Instrument("TCS", "Tata Consultancy Services Limited"),
        Instrument("INFY", "Infosys Limited"),
        Instrument("HDFCBANK", "HDFC Bank Limited"),
        Instrument("ICICIBANK", "ICICI Bank Limited"),
        Instrument("HINDUNILVR", "Hindustan Unilever Limited"),
        Instrument("ITC", "ITC Limited"),
        Instrument("BHARTIARTL", "Bharti Airtel Limited"),
        Instrument("KOTAKBANK", "Kotak Mahindra Bank Limited"),
        Instrument("WIPRO", "Wipro Limited"),
    ]


class MemoryBackend:
    def __init__(self, settings: Settings, book: Optional[RewardBook] = None, feed: Optional[MockPriceFeed] = None):
        self.settings = settings
        self.schedule = settings.fee_schedule()
        self.book = book if book is not None else RewardBook(default_instruments())
        self.feed = feed or MockPriceFeed()
        self.refresher: Optional[PriceRefresher] = None

        self.oracle = self.book
        if settings.price_fallback == "mock":
            self.oracle = FallbackPriceOracle(self.book, self.feed, sink=self.book.record_price)

    def grant(self, request: RewardRequest) -> GrantOutcome:
        return grant_reward(request, self.book, self.schedule, price_oracle=self.oracle)

    def _records(self, user_id: str) -> List[RewardRecord]:
        return self.book.rewards_for_user(user_id)

    def today(self, user_id: str, now: Optional[datetime] = None) -> List[RewardRecord]:
        return today_rewards(self._records(user_id), now or utcnow(), self.settings.timezone)

    def historical(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return historical_value(self._records(user_id), now or utcnow(), self.settings.timezone)

    def portfolio(self, user_id: str) -> Dict[str, Any]:
        return portfolio(
            self.book.holdings_for_user(user_id),
            self.book.get_all_current_prices(),
            self.book.instruments,
        )

    def stats(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return user_stats(self.today(user_id, now), self.portfolio(user_id))

    def reconcile(self) -> Dict[str, int]:
        return reconcile_book(self.book)

    def start_price_refresher(self) -> None:
        self.refresher = PriceRefresher(
            self.feed,
            self.book.record_price,
            self.book.active_symbols,
            self.settings.price_refresh_minutes * 60,
        )
        self.refresher.start()

    def stop(self) -> None:
        if self.refresher is not None:
            self.refresher.stop()


class PostgresBackend:
    def __init__(self, settings: Settings, feed: Optional[MockPriceFeed] = None):
        self.settings = settings
        self.dsn = settings.database_dsn
        self.schedule = settings.fee_schedule()
        self.feed = feed or MockPriceFeed()
        self.prices = PostgresPriceOracle(self.dsn)
        self.refresher: Optional[PriceRefresher] = None

        self.oracle = self.prices
        if settings.price_fallback == "mock":
            self.oracle = FallbackPriceOracle(self.prices, self.feed, sink=self.prices.record_price)

    def grant(self, request: RewardRequest) -> GrantOutcome:
        return grant_reward_db(request, self.schedule, price_oracle=self.oracle, dsn=self.dsn)

    def today(self, user_id: str, now: Optional[datetime] = None) -> List[RewardRecord]:
        now = now or utcnow()
        start, end = day_bounds(now, self.settings.timezone)
        with get_conn(self.dsn) as conn:
            records = get_rewards_for_user(conn, user_id, granted_from=start, granted_to=end)
        return today_rewards(records, now, self.settings.timezone)

    def historical(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        start, _ = day_bounds(now, self.settings.timezone)
        with get_conn(self.dsn) as conn:
            records = get_rewards_for_user(conn, user_id, granted_to=start)
        return historical_value(records, now, self.settings.timezone)

    def portfolio(self, user_id: str) -> Dict[str, Any]:
        with get_conn(self.dsn) as conn:
            positions = get_holdings_for_user(conn, user_id)
            instruments = get_instruments(conn)
        return portfolio(positions, self.prices.get_all_current_prices(), instruments)

    def stats(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return user_stats(self.today(user_id, now), self.portfolio(user_id))

    def reconcile(self) -> Dict[str, int]:
        return reconcile_db(self.dsn)

    def _active_symbols(self) -> List[str]:
        with get_conn(self.dsn) as conn:
            return list_active_symbols(conn)

    def start_price_refresher(self) -> None:
        self.refresher = PriceRefresher(
            self.feed,
            self.prices.record_price,
            self._active_symbols,
            self.settings.price_refresh_minutes * 60,
        )
        self.refresher.start()

    def stop(self) -> None:
        if self.refresher is not None:
            self.refresher.stop()


def build_backend(settings: Settings):
    if settings.storage_backend == "memory":
        logger.info("Using in-memory storage backend")
        return MemoryBackend(settings)
    logger.info("Using postgres storage backend")
    return PostgresBackend(settings)
