from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List

from fee_engine import quantize_money
from models import (
    CASH_OUTFLOW,
    FEES_EXPENSE,
    INSTRUMENT_INVENTORY,
    REVERSAL,
    LedgerPosting,
    RewardRecord,
)


def _pair(record, debit_account, credit_account, amount, debit_desc, credit_desc, created_at):
    """one debit leg + one matching credit leg for the same amount."""
    group_id = record.posting_group_id

    def symbol_for(account):
        return record.symbol if account == INSTRUMENT_INVENTORY else None

    return [
        LedgerPosting(
            posting_group_id=group_id,
            reward_id=record.id,
            account_type=debit_account,
            symbol=symbol_for(debit_account),
            debit_amount=amount,
            credit_amount=quantize_money(0),
            description=debit_desc,
            created_at=created_at,
        ),
        LedgerPosting(
            posting_group_id=group_id,
            reward_id=record.id,
            account_type=credit_account,
            symbol=symbol_for(credit_account),
            debit_amount=quantize_money(0),
            credit_amount=amount,
            description=credit_desc,
            created_at=created_at,
        ),
    ]


def build_postings(record: RewardRecord, created_at: datetime) -> List[LedgerPosting]:
    """
    double-entry postings for one reward, all under record.posting_group_id.

    grant:
      - debit instrument_inventory / credit cash_outflow   (gross value)
      - debit fees_expense         / credit cash_outflow   (total fees)
    reversal:
      - debit cash_outflow / credit instrument_inventory   (|gross value|)

    legs must be strictly positive, so a pair with a zero amount is skipped
    (e.g. fees that round to 0.0000 on a tiny grant).
    """
    postings: List[LedgerPosting] = []
    gross = abs(record.gross_value)

    if record.kind == REVERSAL:
        if gross > 0:
            postings += _pair(
                record,
                CASH_OUTFLOW,
                INSTRUMENT_INVENTORY,
                gross,
                f"Reward reversal: {record.symbol} x {-record.quantity} units from user {record.user_id}",
                "Instrument units returned to inventory",
                created_at,
            )
        return postings

    if gross > 0:
        postings += _pair(
            record,
            INSTRUMENT_INVENTORY,
            CASH_OUTFLOW,
            gross,
            f"Stock reward: {record.symbol} x {record.quantity} units to user {record.user_id}",
            "Cash paid for stock purchase",
            created_at,
        )

    if record.total_fees > 0:
        fees = record.fees
        postings += _pair(
            record,
            FEES_EXPENSE,
            CASH_OUTFLOW,
            record.total_fees,
            (
                f"Fees: brokerage={fees['brokerage']}, transaction_tax={fees['transaction_tax']}, "
                f"tax_on_brokerage={fees['tax_on_brokerage']}, exchange={fees['exchange_fee']}, "
                f"regulatory={fees['regulatory_fee']}"
            ),
            "Cash paid for transaction fees",
            created_at,
        )

    return postings


def group_totals(postings: Iterable[LedgerPosting]) -> Dict:
    """posting_group_id -> (sum of debits, sum of credits)."""
    totals = defaultdict(lambda: [Decimal("0"), Decimal("0")])
    for p in postings:
        totals[p.posting_group_id][0] += p.debit_amount
        totals[p.posting_group_id][1] += p.credit_amount
    return {group: (debit, credit) for group, (debit, credit) in totals.items()}


def is_balanced(postings: Iterable[LedgerPosting]) -> bool:
    postings = list(postings)
    for p in postings:
        # exactly one side strictly positive, the other exactly zero
        if (p.debit_amount > 0) == (p.credit_amount > 0):
            return False
        if p.debit_amount < 0 or p.credit_amount < 0:
            return False
    return all(debit == credit for debit, credit in group_totals(postings).values())
