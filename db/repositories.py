from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import uuid

from psycopg import Connection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from models import HoldingPosition, Instrument, LedgerPosting, PriceSnapshot, RewardRecord

REWARD_COLUMNS = """
    id, idempotency_key, user_id, symbol, kind, quantity, price_per_unit,
    gross_value, brokerage_fee, transaction_tax, tax_on_brokerage,
    exchange_fee, regulatory_fee, total_fees, total_cost, reason, metadata,
    granted_at, recorded_at
"""

HOLDING_COLUMNS = "user_id, symbol, total_quantity, cost_basis, average_cost, last_updated"


def _reward_from_row(row: Dict[str, Any]) -> RewardRecord:
    return RewardRecord(
        id=row["id"],
        idempotency_key=row["idempotency_key"],
        user_id=row["user_id"],
        symbol=row["symbol"],
        kind=row["kind"],
        quantity=row["quantity"],
        price_per_unit=row["price_per_unit"],
        gross_value=row["gross_value"],
        fees={
            "brokerage": row["brokerage_fee"],
            "transaction_tax": row["transaction_tax"],
            "tax_on_brokerage": row["tax_on_brokerage"],
            "exchange_fee": row["exchange_fee"],
            "regulatory_fee": row["regulatory_fee"],
        },
        total_fees=row["total_fees"],
        total_cost=row["total_cost"],
        reason=row["reason"],
        metadata=row["metadata"],
        granted_at=row["granted_at"],
        recorded_at=row["recorded_at"],
    )


def _holding_from_row(row: Dict[str, Any]) -> HoldingPosition:
    return HoldingPosition(**row)


# ---------
# instruments
# ---------


def get_instrument(conn: Connection, symbol: str) -> Optional[Instrument]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT symbol, display_name, venue, is_active FROM instruments WHERE symbol = %s",
            (symbol,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return Instrument(symbol=row[0], display_name=row[1], venue=row[2], is_active=row[3])


def get_instruments(conn: Connection) -> Dict[str, Instrument]:
    with conn.cursor() as cur:
        cur.execute("SELECT symbol, display_name, venue, is_active FROM instruments")
        rows = cur.fetchall()
    return {
        r[0]: Instrument(symbol=r[0], display_name=r[1], venue=r[2], is_active=r[3])
        for r in rows
    }


def list_active_symbols(conn: Connection) -> List[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT symbol FROM instruments WHERE is_active = TRUE ORDER BY symbol")
        return [r[0] for r in cur.fetchall()]


# ---------
# prices
# ---------


def insert_price_snapshot(conn: Connection, snapshot: PriceSnapshot) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO price_snapshots (symbol, price, captured_at, source)
            VALUES (%s, %s, %s, %s)
            """,
            (snapshot.symbol, snapshot.price, snapshot.captured_at, snapshot.source),
        )


def get_latest_price(conn: Connection, symbol: str) -> Optional[Decimal]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT price
            FROM price_snapshots
            WHERE symbol = %s
            ORDER BY captured_at DESC, id DESC
            LIMIT 1
            """,
            (symbol,),
        )
        row = cur.fetchone()
    return row[0] if row else None


def get_latest_prices(conn: Connection) -> Dict[str, Decimal]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT DISTINCT ON (symbol) symbol, price
            FROM price_snapshots
            ORDER BY symbol, captured_at DESC, id DESC
            """
        )
        return {r[0]: r[1] for r in cur.fetchall()}


# ---------
# reward events
# ---------


def get_reward_by_key(conn: Connection, idempotency_key: str) -> Optional[RewardRecord]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {REWARD_COLUMNS} FROM reward_events WHERE idempotency_key = %s",
            (idempotency_key,),
        )
        row = cur.fetchone()
    return _reward_from_row(row) if row else None


def insert_reward_event(
    conn: Connection,
    idempotency_key: str,
    user_id: str,
    symbol: str,
    kind: str,
    quantity: Decimal,
    price_per_unit: Decimal,
    gross_value: Decimal,
    fees: Dict[str, Decimal],
    total_fees: Decimal,
    total_cost: Decimal,
    reason: Optional[str],
    metadata: Optional[Dict[str, Any]],
    granted_at: datetime,
) -> Tuple[RewardRecord, bool]:
    """
    insert a reward event unless the idempotency key is already taken.
    returns (record, created: bool); on conflict `record` is the stored one.

    uses the unique constraint on idempotency_key to enforce idempotency,
    so two racing requests cannot both insert.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO reward_events (
                idempotency_key, user_id, symbol, kind, quantity, price_per_unit,
                gross_value, brokerage_fee, transaction_tax, tax_on_brokerage,
                exchange_fee, regulatory_fee, total_fees, total_cost, reason,
                metadata, granted_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING {REWARD_COLUMNS}
            """,
            (
                idempotency_key,
                user_id,
                symbol,
                kind,
                quantity,
                price_per_unit,
                gross_value,
                fees["brokerage"],
                fees["transaction_tax"],
                fees["tax_on_brokerage"],
                fees["exchange_fee"],
                fees["regulatory_fee"],
                total_fees,
                total_cost,
                reason,
                Jsonb(metadata) if metadata is not None else None,
                granted_at,
            ),
        )
        row = cur.fetchone()

    if row is not None:
        return _reward_from_row(row), True

    # conflict: someone else already stored this key
    existing = get_reward_by_key(conn, idempotency_key)
    if existing is None:
        raise RuntimeError(f"reward {idempotency_key!r} conflicted but could not be re-read")
    return existing, False


def get_rewards_for_user(
    conn: Connection,
    user_id: str,
    granted_from: Optional[datetime] = None,
    granted_to: Optional[datetime] = None,
) -> List[RewardRecord]:
    """rewards for a user, optionally restricted to [granted_from, granted_to)."""
    params: List[Any] = [user_id]
    where_clauses = ["user_id = %s"]

    if granted_from is not None:
        where_clauses.append("granted_at >= %s")
        params.append(granted_from)
    if granted_to is not None:
        where_clauses.append("granted_at < %s")
        params.append(granted_to)

    where_sql = " AND ".join(where_clauses)

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {REWARD_COLUMNS}
            FROM reward_events
            WHERE {where_sql}
            ORDER BY granted_at DESC, id DESC
            """,
            tuple(params),
        )
        return [_reward_from_row(r) for r in cur.fetchall()]


def get_all_rewards(conn: Connection) -> List[RewardRecord]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(f"SELECT {REWARD_COLUMNS} FROM reward_events ORDER BY id")
        return [_reward_from_row(r) for r in cur.fetchall()]


def get_rewards_for_pair(conn: Connection, user_id: str, symbol: str) -> List[RewardRecord]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {REWARD_COLUMNS}
            FROM reward_events
            WHERE user_id = %s AND symbol = %s
            ORDER BY id
            """,
            (user_id, symbol),
        )
        return [_reward_from_row(r) for r in cur.fetchall()]


# ---------
# holdings
# ---------


def lock_holding(conn: Connection, user_id: str, symbol: str) -> HoldingPosition:
    """
    make sure the (user, symbol) row exists, then lock it FOR UPDATE.

    inserting the empty row first matters: FOR UPDATE on a missing row locks
    nothing, so two first-time grants would both start from "no position".
    must be called inside a transaction; the lock is held until commit.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO holdings (user_id, symbol)
            VALUES (%s, %s)
            ON CONFLICT (user_id, symbol) DO NOTHING
            """,
            (user_id, symbol),
        )
        cur.execute(
            f"""
            SELECT {HOLDING_COLUMNS}
            FROM holdings
            WHERE user_id = %s AND symbol = %s
            FOR UPDATE
            """,
            (user_id, symbol),
        )
        return _holding_from_row(cur.fetchone())


def save_holding(conn: Connection, position: HoldingPosition) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO holdings (user_id, symbol, total_quantity, cost_basis, average_cost, last_updated)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, symbol)
            DO UPDATE SET
                total_quantity = EXCLUDED.total_quantity,
                cost_basis = EXCLUDED.cost_basis,
                average_cost = EXCLUDED.average_cost,
                last_updated = EXCLUDED.last_updated
            """,
            (
                position.user_id,
                position.symbol,
                position.total_quantity,
                position.cost_basis,
                position.average_cost,
                position.last_updated,
            ),
        )


def get_holdings_for_user(conn: Connection, user_id: str) -> List[HoldingPosition]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {HOLDING_COLUMNS}
            FROM holdings
            WHERE user_id = %s AND total_quantity > 0
            ORDER BY symbol
            """,
            (user_id,),
        )
        return [_holding_from_row(r) for r in cur.fetchall()]


# ---------
# ledger
# ---------


def insert_ledger_postings(conn: Connection, postings: List[LedgerPosting]) -> bool:
    """
    all legs of one reward's posting group; caller commits.

    the ledger_posted row (primary key on reward_id) is claimed first, so a
    second writer for the same reward blocks until the first commits and then
    stores nothing. returns False in that case.
    """
    reward_ids = {p.reward_id for p in postings}
    if len(reward_ids) != 1:
        raise ValueError("A posting group must belong to exactly one reward")
    reward_id = reward_ids.pop()

    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO ledger_posted (reward_id, posting_group_id)
            VALUES (%s, %s)
            ON CONFLICT (reward_id) DO NOTHING
            RETURNING reward_id
            """,
            (reward_id, postings[0].posting_group_id),
        )
        if cur.fetchone() is None:
            return False

        cur.executemany(
            """
            INSERT INTO ledger_postings
                (posting_group_id, reward_id, account_type, symbol,
                 debit_amount, credit_amount, description, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            [
                (
                    p.posting_group_id,
                    p.reward_id,
                    p.account_type,
                    p.symbol,
                    p.debit_amount,
                    p.credit_amount,
                    p.description,
                    p.created_at,
                )
                for p in postings
            ],
        )
    return True


def get_postings_for_reward(conn: Connection, reward_id: int) -> List[LedgerPosting]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT posting_group_id, reward_id, account_type, symbol,
                   debit_amount, credit_amount, description, created_at
            FROM ledger_postings
            WHERE reward_id = %s
            ORDER BY id
            """,
            (reward_id,),
        )
        rows = cur.fetchall()
    return [
        LedgerPosting(
            posting_group_id=r[0] if isinstance(r[0], uuid.UUID) else uuid.UUID(str(r[0])),
            reward_id=r[1],
            account_type=r[2],
            symbol=r[3],
            debit_amount=r[4],
            credit_amount=r[5],
            description=r[6],
            created_at=r[7],
        )
        for r in rows
    ]


def get_posted_reward_ids(conn: Connection) -> set:
    with conn.cursor() as cur:
        cur.execute("SELECT reward_id FROM ledger_posted")
        return {r[0] for r in cur.fetchall()}
