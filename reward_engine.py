import itertools
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import (
    DuplicateIdempotencyKey,
    InstrumentUnavailable,
    InsufficientHoldings,
    InvalidRewardRequest,
    PriceUnavailable,
)
from fee_engine import FeeSchedule, compute_fees, quantize_money, quantize_quantity, zero_fees
from holdings_engine import apply_grant
from idempotency import Admitted, admit_or_replay, normalize_key
from ledger import build_postings, is_balanced
from models import (
    GRANT,
    REVERSAL,
    REWARD_KINDS,
    GrantOutcome,
    HoldingPosition,
    Instrument,
    LedgerPosting,
    PriceSnapshot,
    RewardRecord,
    RewardRequest,
)

logger = logging.getLogger(__name__)


# ---------
# shared helpers (also used by reward_engine_db)
# ---------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_decimal(value, name: str) -> Decimal:
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRewardRequest(f"{name} must be a number, got {value!r}")
    if not number.is_finite():
        raise InvalidRewardRequest(f"{name} must be finite, got {value!r}")
    return number


def validate_request(request: RewardRequest) -> Tuple[str, str, str, Decimal]:
    """
    precondition checks, run before anything touches storage.
    returns (idempotency_key, user_id, symbol, quantity) normalized.
    """
    key = normalize_key(request.idempotency_key)

    user_id = (request.user_id or "").strip()
    if not user_id:
        raise InvalidRewardRequest("user_id is required")

    symbol = (request.symbol or "").strip().upper()
    if not symbol:
        raise InvalidRewardRequest("symbol is required")

    if request.kind not in REWARD_KINDS:
        raise InvalidRewardRequest(f"kind must be one of {', '.join(REWARD_KINDS)}")

    quantity = quantize_quantity(_as_decimal(request.quantity, "quantity"))
    if quantity <= 0:
        raise InvalidRewardRequest("quantity must be greater than 0 (at 6 decimal places)")

    return key, user_id, symbol, quantity


def price_grant(quantity: Decimal, price: Decimal, schedule: FeeSchedule) -> Dict[str, Any]:
    """gross value, fee breakdown and total cost for a grant at `price`."""
    gross_value = quantize_money(quantity * price)
    if gross_value <= 0:
        raise InvalidRewardRequest(
            f"quantity {quantity} at price {price} is worth nothing at 4 decimal places"
        )
    fees = compute_fees(gross_value, schedule)
    total_fees = fees.pop("total")
    return {
        "price_per_unit": price,
        "gross_value": gross_value,
        "fees": fees,
        "total_fees": total_fees,
        "total_cost": quantize_money(gross_value + total_fees),
    }


def price_reversal(quantity: Decimal, average_cost: Decimal) -> Dict[str, Any]:
    """reversals leave at average cost and carry no fees (nothing is traded)."""
    gross_value = quantize_money(-quantity * average_cost)
    fees = zero_fees()
    total_fees = fees.pop("total")
    return {
        "price_per_unit": average_cost,
        "gross_value": gross_value,
        "fees": fees,
        "total_fees": total_fees,
        "total_cost": gross_value,
    }


def resolve_price(oracle, symbol: str) -> Decimal:
    price = oracle.get_current_price(symbol)
    if price is None:
        raise PriceUnavailable(symbol)
    price = quantize_money(price)
    if price <= 0:
        # bad feed data is the feed's problem, not the caller's
        logger.error("Price oracle returned non-positive price %s for %s", price, symbol)
        raise PriceUnavailable(symbol)
    return price


def granted_at_or_now(value: Optional[datetime], now: datetime) -> datetime:
    if value is None:
        return now
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------
# in-memory storage
# ---------


class RewardBook:
    """
    in-memory stand-in for the database tables. thread-safe:
      - reward inserts are serialized and enforce idempotency-key uniqueness
      - each (user, symbol) holding has its own lock
      - a posting group is stored all-or-nothing
    it also acts as the price oracle (latest snapshot per symbol).
    """

    def __init__(self, instruments: Optional[Iterable[Instrument]] = None):
        self.instruments: Dict[str, Instrument] = {}
        self.rewards: Dict[int, RewardRecord] = {}
        self.idempotency_index: Dict[str, int] = {}
        self.holdings: Dict[Tuple[str, str], HoldingPosition] = {}
        self.postings: List[LedgerPosting] = []
        self.price_snapshots: List[PriceSnapshot] = []

        self._ids = itertools.count(1)
        self._rewards_lock = threading.Lock()
        self._postings_lock = threading.Lock()
        self._prices_lock = threading.Lock()
        # one lock per (user, symbol) ever seen; never pruned, so memory grows
        # with the number of pairs. fine for a single-process book.
        self._pair_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._pair_locks_guard = threading.Lock()

        for instrument in instruments or []:
            self.add_instrument(instrument)

    # instruments

    def add_instrument(self, instrument: Instrument) -> None:
        self.instruments[instrument.symbol] = instrument

    def get_instrument(self, symbol: str) -> Optional[Instrument]:
        return self.instruments.get(symbol)

    def active_symbols(self) -> List[str]:
        return sorted(s for s, i in self.instruments.items() if i.is_active)

    # prices

    def record_price(self, snapshot: PriceSnapshot) -> None:
        with self._prices_lock:
            self.price_snapshots.append(snapshot)

    def get_current_price(self, symbol: str) -> Optional[Decimal]:
        return self.get_all_current_prices().get(symbol)

    def get_all_current_prices(self) -> Dict[str, Decimal]:
        with self._prices_lock:
            snapshots = list(self.price_snapshots)
        latest: Dict[str, PriceSnapshot] = {}
        for snap in snapshots:
            current = latest.get(snap.symbol)
            # ties on timestamp go to the later append
            if current is None or snap.captured_at >= current.captured_at:
                latest[snap.symbol] = snap
        return {symbol: snap.price for symbol, snap in latest.items()}

    # rewards

    def get_reward_by_key(self, key: str) -> Optional[RewardRecord]:
        with self._rewards_lock:
            reward_id = self.idempotency_index.get(key)
            return self.rewards.get(reward_id) if reward_id is not None else None

    def insert_reward(self, **fields) -> RewardRecord:
        """raises DuplicateIdempotencyKey if the key is already stored."""
        key = fields["idempotency_key"]
        with self._rewards_lock:
            if key in self.idempotency_index:
                raise DuplicateIdempotencyKey(key)
            reward_id = next(self._ids)
            record = RewardRecord(id=reward_id, recorded_at=utcnow(), **fields)
            self.rewards[reward_id] = record
            self.idempotency_index[key] = reward_id
            return record

    def rewards_for_user(self, user_id: str) -> List[RewardRecord]:
        with self._rewards_lock:
            return [r for r in self.rewards.values() if r.user_id == user_id]

    def rewards_for_pair(self, user_id: str, symbol: str) -> List[RewardRecord]:
        with self._rewards_lock:
            return sorted(
                (r for r in self.rewards.values() if (r.user_id, r.symbol) == (user_id, symbol)),
                key=lambda r: r.id,
            )

    def all_rewards(self) -> List[RewardRecord]:
        with self._rewards_lock:
            return sorted(self.rewards.values(), key=lambda r: r.id)

    # holdings

    def pair_lock(self, user_id: str, symbol: str) -> threading.RLock:
        with self._pair_locks_guard:
            lock = self._pair_locks.get((user_id, symbol))
            if lock is None:
                lock = self._pair_locks[(user_id, symbol)] = threading.RLock()
            return lock

    def get_holding(self, user_id: str, symbol: str) -> Optional[HoldingPosition]:
        return self.holdings.get((user_id, symbol))

    def apply_to_holding(self, user_id: str, symbol: str, quantity, price, now: datetime) -> HoldingPosition:
        """read-modify-write of one holding under its pair lock."""
        with self.pair_lock(user_id, symbol):
            current = self.holdings.get((user_id, symbol))
            updated = apply_grant(current, user_id, symbol, quantity, price, now)
            self.holdings[(user_id, symbol)] = updated
            return updated

    def replace_holding(self, position: HoldingPosition) -> None:
        with self.pair_lock(position.user_id, position.symbol):
            self.holdings[(position.user_id, position.symbol)] = position

    def holdings_for_user(self, user_id: str) -> List[HoldingPosition]:
        return sorted(
            (h for (uid, _), h in list(self.holdings.items()) if uid == user_id),
            key=lambda h: h.symbol,
        )

    # ledger

    def insert_postings(self, postings: List[LedgerPosting]) -> bool:
        """
        store one reward's posting group unless that reward is already posted.
        returns False (and stores nothing) when it was.
        """
        if not is_balanced(postings):
            raise ValueError("Refusing to store an unbalanced posting group")
        if not postings:
            return False
        reward_ids = {p.reward_id for p in postings}
        with self._postings_lock:
            if any(p.reward_id in reward_ids for p in self.postings):
                return False
            self.postings.extend(postings)
            return True

    def postings_for_reward(self, reward_id: int) -> List[LedgerPosting]:
        with self._postings_lock:
            return [p for p in self.postings if p.reward_id == reward_id]

    def posted_reward_ids(self) -> set:
        with self._postings_lock:
            return {p.reward_id for p in self.postings}


# ---------
# the engine
# ---------


def grant_reward(
    request: RewardRequest,
    book: RewardBook,
    schedule: FeeSchedule,
    price_oracle=None,
) -> GrantOutcome:
    """
    grant units of an instrument to a user:
      1. idempotency check (replay returns the stored record, nothing else runs)
      2. validate request + instrument
      3. price the reward and compute fees
      4. persist the immutable reward record          <- point of no return
      5. update the (user, symbol) holding             (best effort, logged)
      6. store the balanced ledger postings            (best effort, logged)

    price_oracle defaults to the book's own latest snapshots.
    """
    oracle = price_oracle or book

    # 1) idempotency
    decision = admit_or_replay(request.idempotency_key, book.get_reward_by_key)
    if not isinstance(decision, Admitted):
        logger.info(
            "Duplicate reward request detected (key: %s), returning existing reward %s",
            decision.record.idempotency_key,
            decision.record.id,
        )
        return GrantOutcome(record=decision.record, replayed=True)

    # 2) validation
    key, user_id, symbol, quantity = validate_request(request)
    instrument = book.get_instrument(symbol)
    if instrument is None:
        raise InstrumentUnavailable(symbol, "does not exist")
    if not instrument.is_active:
        raise InstrumentUnavailable(symbol, "is not active (possibly delisted)")

    now = utcnow()
    granted_at = granted_at_or_now(request.granted_at, now)

    if request.kind == REVERSAL:
        return _reverse(request, book, key, user_id, symbol, quantity, granted_at, now)

    # 3) pricing + fees
    price = resolve_price(oracle, symbol)
    priced = price_grant(quantity, price, schedule)

    # 4) + 5) under the pair lock, so reconciliation never sees a stored
    # reward whose holding update is still pending
    with book.pair_lock(user_id, symbol):
        try:
            record = book.insert_reward(
                idempotency_key=key,
                user_id=user_id,
                symbol=symbol,
                kind=GRANT,
                quantity=quantity,
                reason=request.reason,
                metadata=request.metadata,
                granted_at=granted_at,
                **priced,
            )
        except DuplicateIdempotencyKey:
            existing = book.get_reward_by_key(key)
            logger.info("Idempotency key %s won by a concurrent request, returning reward %s", key, existing.id)
            return GrantOutcome(record=existing, replayed=True)

        outcome = GrantOutcome(record=record)

        try:
            book.apply_to_holding(user_id, symbol, quantity, price, now)
        except Exception as e:
            logger.exception("Failed to update holdings for reward %s (%s/%s)", record.id, user_id, symbol)
            outcome.warnings.append(f"holdings update failed: {e}")

    # 6) ledger
    _post_ledger(book, record, now, outcome)

    logger.info(
        "Reward created: user=%s, stock=%s, shares=%s, price=%s, total_cost=%s",
        record.user_id,
        record.symbol,
        record.quantity,
        record.price_per_unit,
        record.total_cost,
    )
    return outcome


def _reverse(request, book, key, user_id, symbol, quantity, granted_at, now) -> GrantOutcome:
    """
    reversals check and update the holding under the pair lock, around the
    record insert, so one that would go negative leaves no trace.
    """
    with book.pair_lock(user_id, symbol):
        existing = book.get_reward_by_key(key)
        if existing is not None:
            return GrantOutcome(record=existing, replayed=True)

        position = book.get_holding(user_id, symbol)
        held = position.total_quantity if position is not None else Decimal("0")
        if held < quantity:
            raise InsufficientHoldings(
                f"User {user_id} holds {held} {symbol}; cannot reverse {quantity}."
            )

        priced = price_reversal(quantity, position.average_cost)
        try:
            record = book.insert_reward(
                idempotency_key=key,
                user_id=user_id,
                symbol=symbol,
                kind=REVERSAL,
                quantity=-quantity,
                reason=request.reason,
                metadata=request.metadata,
                granted_at=granted_at,
                **priced,
            )
        except DuplicateIdempotencyKey:
            return GrantOutcome(record=book.get_reward_by_key(key), replayed=True)
        book.apply_to_holding(user_id, symbol, -quantity, position.average_cost, now)

    outcome = GrantOutcome(record=record)
    _post_ledger(book, record, now, outcome)
    logger.info("Reward reversed: user=%s, stock=%s, shares=%s", user_id, symbol, quantity)
    return outcome


def _post_ledger(book: RewardBook, record: RewardRecord, now: datetime, outcome: GrantOutcome) -> None:
    try:
        if not book.insert_postings(build_postings(record, now)):
            logger.info("Ledger group for reward %s was already posted", record.id)
    except Exception as e:
        logger.exception("Failed to create ledger entries for reward %s", record.id)
        outcome.warnings.append(f"ledger posting failed: {e}")
