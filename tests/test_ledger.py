from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

from fee_engine import FeeSchedule, compute_fees, zero_fees
from ledger import build_postings, group_totals, is_balanced
from models import CASH_OUTFLOW, FEES_EXPENSE, GRANT, INSTRUMENT_INVENTORY, REVERSAL, RewardRecord, posting_group_id_for

NOW = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _record(reward_id=1, kind=GRANT, quantity=Decimal("2.5"), gross=Decimal("8750.0000")):
    fees = compute_fees(gross, FeeSchedule()) if kind == GRANT else zero_fees()
    total_fees = fees.pop("total")
    return RewardRecord(
        id=reward_id,
        idempotency_key=f"key-{reward_id}",
        user_id="u1",
        symbol="TCS",
        kind=kind,
        quantity=quantity,
        price_per_unit=Decimal("3500.0000"),
        gross_value=gross,
        fees=fees,
        total_fees=total_fees,
        total_cost=gross + total_fees,
        reason=None,
        metadata=None,
        granted_at=NOW,
        recorded_at=NOW,
    )


def test_grant_postings_balance():
    record = _record()
    postings = build_postings(record, NOW)

    assert len(postings) == 4
    assert is_balanced(postings)

    debit, credit = group_totals(postings)[record.posting_group_id]
    assert debit == credit == record.total_cost == Decimal("8780.5375")


def test_grant_postings_accounts():
    postings = build_postings(_record(), NOW)

    debits = {p.account_type: p.debit_amount for p in postings if p.debit_amount > 0}
    credits = [(p.account_type, p.credit_amount) for p in postings if p.credit_amount > 0]

    assert debits == {
        INSTRUMENT_INVENTORY: Decimal("8750.0000"),
        FEES_EXPENSE: Decimal("30.5375"),
    }
    assert credits == [
        (CASH_OUTFLOW, Decimal("8750.0000")),
        (CASH_OUTFLOW, Decimal("30.5375")),
    ]
    # only inventory legs carry the symbol
    assert {p.symbol for p in postings if p.account_type == INSTRUMENT_INVENTORY} == {"TCS"}
    assert {p.symbol for p in postings if p.account_type != INSTRUMENT_INVENTORY} == {None}


def test_all_postings_share_the_group_id():
    record = _record(reward_id=42)
    postings = build_postings(record, NOW)

    assert {p.posting_group_id for p in postings} == {posting_group_id_for(42)}
    assert {p.reward_id for p in postings} == {42}


def test_zero_fees_skip_the_fee_pair():
    # gross 0.0010 rounds every fee component to 0.0000
    record = _record(quantity=Decimal("0.000001"), gross=Decimal("0.0010"))
    postings = build_postings(record, NOW)

    assert record.total_fees == Decimal("0")
    assert len(postings) == 2
    assert all(p.account_type != FEES_EXPENSE for p in postings)
    assert is_balanced(postings)


def test_reversal_postings():
    record = _record(kind=REVERSAL, quantity=Decimal("-1"), gross=Decimal("-3500.0000"))
    postings = build_postings(record, NOW)

    assert len(postings) == 2
    assert is_balanced(postings)
    by_account = {p.account_type: p for p in postings}
    assert by_account[CASH_OUTFLOW].debit_amount == Decimal("3500.0000")
    assert by_account[INSTRUMENT_INVENTORY].credit_amount == Decimal("3500.0000")


def test_unbalanced_group_is_detected():
    postings = build_postings(_record(), NOW)
    postings[0] = replace(postings[0], debit_amount=postings[0].debit_amount + Decimal("0.0001"))
    assert not is_balanced(postings)


def test_leg_with_both_sides_is_rejected():
    postings = build_postings(_record(), NOW)
    postings[0] = replace(postings[0], credit_amount=postings[0].debit_amount)
    postings[1] = replace(postings[1], debit_amount=postings[1].credit_amount)
    assert not is_balanced(postings)


def test_is_balanced_accepts_generators():
    postings = build_postings(_record(), NOW)
    assert is_balanced(p for p in postings)
