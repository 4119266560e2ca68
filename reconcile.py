"""
rebuild derived state (holdings, ledger postings) from the immutable
reward log. this is the repair path for grants whose follow-up steps failed.

each (user, symbol) pair is rebuilt while its holding lock is held, from the
records read under that lock, so a grant landing mid-run is never overwritten.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from db.db import get_conn
from db.repositories import (
    get_all_rewards,
    get_posted_reward_ids,
    get_rewards_for_pair,
    insert_ledger_postings,
    lock_holding,
    save_holding,
)
from errors import InsufficientHoldings
from holdings_engine import apply_grant
from ledger import build_postings
from models import HoldingPosition, RewardRecord
from reward_engine import utcnow

logger = logging.getLogger(__name__)


def rebuild_positions(
    records: Iterable[RewardRecord],
    now: datetime,
) -> Dict[Tuple[str, str], HoldingPosition]:
    """replay rewards in id (insert) order and return the implied positions."""
    positions: Dict[Tuple[str, str], HoldingPosition] = {}
    for r in sorted(records, key=lambda r: r.id):
        pair = (r.user_id, r.symbol)
        try:
            positions[pair] = apply_grant(
                positions.get(pair), r.user_id, r.symbol, r.quantity, r.price_per_unit, now
            )
        except InsufficientHoldings:
            # only possible if the log itself was edited by hand
            logger.error("Reward %s drives %s/%s negative on replay; skipped", r.id, r.user_id, r.symbol)
    return positions


def _pairs(records: Iterable[RewardRecord]) -> List[Tuple[str, str]]:
    return sorted({(r.user_id, r.symbol) for r in records})


def _differs(current: Optional[HoldingPosition], position: HoldingPosition) -> bool:
    if current is None:
        return True
    return (current.total_quantity, current.cost_basis) != (position.total_quantity, position.cost_basis)


def reconcile_book(book, now: Optional[datetime] = None) -> Dict[str, int]:
    """in-memory: replace cached holdings, post missing ledger groups."""
    now = now or utcnow()
    records = book.all_rewards()

    changed = 0
    for user_id, symbol in _pairs(records):
        with book.pair_lock(user_id, symbol):
            position = rebuild_positions(book.rewards_for_pair(user_id, symbol), now).get((user_id, symbol))
            if position is None:
                continue
            if _differs(book.get_holding(user_id, symbol), position):
                changed += 1
                book.replace_holding(position)

    posted = book.posted_reward_ids()
    reposted = 0
    for r in records:
        if r.id in posted:
            continue
        # insert_postings re-checks under its own lock
        if book.insert_postings(build_postings(r, now)):
            reposted += 1

    result = {"records": len(records), "holdings_changed": changed, "groups_posted": reposted}
    logger.info("Reconciliation finished: %s", result)
    return result


def reconcile_db(dsn: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, int]:
    """postgres: rewrite holdings from reward_events, post missing ledger groups."""
    now = now or utcnow()
    with get_conn(dsn) as conn:
        records = get_all_rewards(conn)
        conn.rollback()

        changed = 0
        for user_id, symbol in _pairs(records):
            try:
                current = lock_holding(conn, user_id, symbol)
                pair_records = get_rewards_for_pair(conn, user_id, symbol)
                position = rebuild_positions(pair_records, now).get((user_id, symbol))
                if position is not None and _differs(current, position):
                    changed += 1
                    save_holding(conn, position)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        posted = get_posted_reward_ids(conn)
        reposted = 0
        for r in records:
            if r.id in posted:
                continue
            try:
                postings = build_postings(r, now)
                if postings and insert_ledger_postings(conn, postings):
                    reposted += 1
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    result = {"records": len(records), "holdings_changed": changed, "groups_posted": reposted}
    logger.info("Reconciliation finished: %s", result)
    return result
