import logging
import random
import threading
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Dict, Iterable, Optional

from models import PriceSnapshot

logger = logging.getLogger(__name__)

# reference prices (INR) for the seeded NSE instruments
BASE_PRICES: Dict[str, Decimal] = {
    "RELIANCE": Decimal("2500"),
    "TCS": Decimal("3500"),
    "INFY": Decimal("1500"),
    "HDFCBANK": Decimal("1600"),
    "ICICIBANK": Decimal("950"),
    "HINDUNILVR": Decimal("2400"),
    "ITC": Decimal("450"),
    "BHARTIARTL": Decimal("900"),
    "KOTAKBANK": Decimal("1750"),
    "WIPRO": Decimal("420"),
}
DEFAULT_BASE_PRICE = Decimal("1000")
MAX_VARIATION = Decimal("0.05")


class MockPriceFeed:
    """
    synthetic quotes: base price +/- up to 5%, truncated to 2 dp.
    pass a seeded random.Random for reproducible quotes.
    """

    source = "mock"

    def __init__(self, base_prices: Optional[Dict[str, Decimal]] = None, rng: Optional[random.Random] = None):
        self.base_prices = dict(BASE_PRICES if base_prices is None else base_prices)
        self.rng = rng or random.Random()

    def quote(self, symbol: str) -> Decimal:
        base = self.base_prices.get(symbol, DEFAULT_BASE_PRICE)
        variation = (Decimal(str(self.rng.random())) - Decimal("0.5")) * 2 * MAX_VARIATION
        price = base * (1 + variation)
        return price.quantize(Decimal("0.01"), rounding=ROUND_DOWN)


class FallbackPriceOracle:
    """
    wraps a snapshot-backed oracle. when it has no price for a symbol,
    take a quote from `feed` and append it as a snapshot through `sink`
    so later lookups (and portfolio valuation) see the same price.
    """

    def __init__(self, primary, feed: MockPriceFeed, sink: Optional[Callable[[PriceSnapshot], None]] = None):
        self.primary = primary
        self.feed = feed
        self.sink = sink

    def get_current_price(self, symbol: str) -> Optional[Decimal]:
        price = self.primary.get_current_price(symbol)
        if price is not None:
            return price

        price = self.feed.quote(symbol)
        logger.warning("No snapshot for %s, using fallback quote %s", symbol, price)
        if self.sink is not None:
            self.sink(
                PriceSnapshot(
                    symbol=symbol,
                    price=price,
                    captured_at=datetime.now(timezone.utc),
                    source=f"{self.feed.source}-fallback",
                )
            )
        return price

    def get_all_current_prices(self) -> Dict[str, Decimal]:
        return self.primary.get_all_current_prices()


class PriceRefresher:
    """
    background ticker: refresh once on start, then every `interval_seconds`.
    its only effect is appending PriceSnapshot rows through `sink`, so it
    needs no coordination with reward processing.
    """

    def __init__(
        self,
        feed: MockPriceFeed,
        sink: Callable[[PriceSnapshot], None],
        symbols: Callable[[], Iterable[str]],
        interval_seconds: float,
    ):
        self.feed = feed
        self.sink = sink
        self.symbols = symbols
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def refresh_once(self) -> int:
        now = datetime.now(timezone.utc)
        updated = 0
        for symbol in self.symbols():
            try:
                snapshot = PriceSnapshot(
                    symbol=symbol,
                    price=self.feed.quote(symbol),
                    captured_at=now,
                    source=self.feed.source,
                )
                self.sink(snapshot)
                updated += 1
            except Exception:
                logger.exception("Failed to save price for %s", symbol)
        logger.info("Updated %d stock prices at %s", updated, now.isoformat())
        return updated

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.refresh_once()
            except Exception:
                # e.g. the symbol listing itself failed; try again next tick
                logger.exception("Price refresh failed")
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="price-refresher", daemon=True)
        self._thread.start()
        logger.info("Stock price updater started (interval: %s seconds)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
