import logging
from decimal import Decimal
from typing import Dict, Optional

from psycopg import Connection

from db.db import get_conn
from db.repositories import (
    get_instrument,
    get_latest_price,
    get_latest_prices,
    get_reward_by_key,
    insert_ledger_postings,
    insert_price_snapshot,
    insert_reward_event,
    lock_holding,
    save_holding,
)
from errors import InstrumentUnavailable, InsufficientHoldings
from fee_engine import FeeSchedule
from holdings_engine import apply_grant
from idempotency import Admitted, admit_or_replay
from ledger import build_postings
from models import GRANT, REVERSAL, GrantOutcome, PriceSnapshot, RewardRecord, RewardRequest
from reward_engine import (
    granted_at_or_now,
    price_grant,
    price_reversal,
    resolve_price,
    utcnow,
    validate_request,
)

logger = logging.getLogger(__name__)


class PostgresPriceOracle:
    """latest price_snapshots row per symbol."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    def get_current_price(self, symbol: str) -> Optional[Decimal]:
        with get_conn(self.dsn) as conn:
            return get_latest_price(conn, symbol)

    def get_all_current_prices(self) -> Dict[str, Decimal]:
        with get_conn(self.dsn) as conn:
            return get_latest_prices(conn)

    def record_price(self, snapshot: PriceSnapshot) -> None:
        with get_conn(self.dsn) as conn:
            insert_price_snapshot(conn, snapshot)
            conn.commit()


def grant_reward_db(
    request: RewardRequest,
    schedule: FeeSchedule,
    price_oracle=None,
    dsn: Optional[str] = None,
) -> GrantOutcome:
    """
    DB-backed variant of grant_reward.

    the reward insert and the holding update commit together (the holding
    update behind a savepoint); the ledger postings follow in their own
    transaction. if a follow-up step fails the reward still stands and the
    failure is logged + returned as a warning (reconcile_db rebuilds the
    derived tables from reward_events).
    """
    oracle = price_oracle or PostgresPriceOracle(dsn)

    with get_conn(dsn) as conn:
        # 1) idempotency
        decision = admit_or_replay(request.idempotency_key, lambda key: get_reward_by_key(conn, key))
        if not isinstance(decision, Admitted):
            logger.info(
                "Duplicate reward request detected (key: %s), returning existing reward %s",
                decision.record.idempotency_key,
                decision.record.id,
            )
            conn.rollback()
            return GrantOutcome(record=decision.record, replayed=True)

        # 2) validation
        key, user_id, symbol, quantity = validate_request(request)
        instrument = get_instrument(conn, symbol)
        if instrument is None:
            raise InstrumentUnavailable(symbol, "does not exist")
        if not instrument.is_active:
            raise InstrumentUnavailable(symbol, "is not active (possibly delisted)")
        conn.rollback()  # close the read-only transaction before pricing

        now = utcnow()
        granted_at = granted_at_or_now(request.granted_at, now)

        if request.kind == REVERSAL:
            return _reverse_db(conn, request, key, user_id, symbol, quantity, granted_at, now)

        # 3) pricing + fees
        price = resolve_price(oracle, symbol)
        priced = price_grant(quantity, price, schedule)

        # 4) + 5) persist the reward and update the holding in one transaction.
        # the holding row is locked first, so reconcile_db (which takes the same
        # lock) sees either both or neither. the holding update runs in a
        # savepoint: if it fails the reward still commits.
        try:
            position = lock_holding(conn, user_id, symbol)
            record, created = insert_reward_event(
                conn,
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
            if not created:
                conn.rollback()
                logger.info("Idempotency key %s won by a concurrent request, returning reward %s", key, record.id)
                return GrantOutcome(record=record, replayed=True)

            outcome = GrantOutcome(record=record)
            try:
                with conn.transaction():
                    save_holding(conn, apply_grant(position, user_id, symbol, quantity, price, now))
            except Exception as e:
                logger.exception("Failed to update holdings for reward %s (%s/%s)", record.id, user_id, symbol)
                outcome.warnings.append(f"holdings update failed: {e}")
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        # 6) ledger
        _post_ledger_db(conn, record, now, outcome)

    logger.info(
        "Reward created: user=%s, stock=%s, shares=%s, price=%s, total_cost=%s",
        record.user_id,
        record.symbol,
        record.quantity,
        record.price_per_unit,
        record.total_cost,
    )
    return outcome


def _reverse_db(conn: Connection, request, key, user_id, symbol, quantity, granted_at, now) -> GrantOutcome:
    """
    reversal: holding check, reward insert and holding update share one
    transaction (holding row locked FOR UPDATE), so a rejected reversal
    leaves nothing behind.
    """
    try:
        position = lock_holding(conn, user_id, symbol)
        if position.total_quantity < quantity:
            raise InsufficientHoldings(
                f"User {user_id} holds {position.total_quantity} {symbol}; cannot reverse {quantity}."
            )

        priced = price_reversal(quantity, position.average_cost)
        record, created = insert_reward_event(
            conn,
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
        if not created:
            conn.rollback()
            return GrantOutcome(record=record, replayed=True)

        save_holding(conn, apply_grant(position, user_id, symbol, -quantity, position.average_cost, now))
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    outcome = GrantOutcome(record=record)
    _post_ledger_db(conn, record, now, outcome)
    logger.info("Reward reversed: user=%s, stock=%s, shares=%s", user_id, symbol, quantity)
    return outcome


def _post_ledger_db(conn: Connection, record: RewardRecord, now, outcome: GrantOutcome) -> None:
    try:
        postings = build_postings(record, now)
        if postings and not insert_ledger_postings(conn, postings):
            logger.info("Ledger group for reward %s was already posted", record.id)
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.exception("Failed to create ledger entries for reward %s", record.id)
        outcome.warnings.append(f"ledger posting failed: {e}")
