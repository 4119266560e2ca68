from decimal import Decimal

from fee_engine import FEE_COMPONENTS, FeeSchedule, compute_fees, quantize_money, zero_fees


def test_tcs_grant_fee_breakdown():
    """
    2.5 TCS at 3500.00 -> gross 8750.0000 with the default schedule.
    """
    fees = compute_fees(Decimal("8750.0000"), FeeSchedule())

    assert fees["brokerage"] == Decimal("4.3750")
    assert fees["transaction_tax"] == Decimal("21.8750")
    assert fees["exchange_fee"] == Decimal("2.6250")
    assert fees["regulatory_fee"] == Decimal("0.8750")
    assert fees["tax_on_brokerage"] == Decimal("0.7875")
    assert fees["total"] == Decimal("30.5375")

    # total is the sum of the rounded components
    assert fees["total"] == sum(fees[name] for name in FEE_COMPONENTS)


def test_fees_are_deterministic():
    schedule = FeeSchedule()
    first = compute_fees(Decimal("1234.5678"), schedule)
    second = compute_fees(Decimal("1234.5678"), schedule)
    assert first == second


def test_components_are_rounded_half_up_to_4dp():
    """
    gross 0.0010 -> brokerage raw 0.0000005, rounds to 0.0000;
    gross 1.0000 -> transaction tax raw 0.0025 exactly, stays 0.0025.
    """
    schedule = FeeSchedule()
    tiny = compute_fees(Decimal("0.0010"), schedule)
    assert tiny["brokerage"] == Decimal("0.0000")

    one = compute_fees(Decimal("1.0000"), schedule)
    assert one["transaction_tax"] == Decimal("0.0025")
    assert one["brokerage"] == Decimal("0.0005")
    # 0.0005 * 18% = 0.00009 -> 0.0001
    assert one["tax_on_brokerage"] == Decimal("0.0001")

    for value in one.values():
        assert value == quantize_money(value)
        assert value.as_tuple().exponent == -4


def test_tax_on_brokerage_uses_unrounded_brokerage():
    schedule = FeeSchedule(tax_on_brokerage_pct=Decimal("40"))
    # brokerage raw 0.00014 -> 0.0001; tax from raw 0.000056 -> 0.0001
    # (from rounded 0.0001 it would be 0.00004 -> 0.0000)
    fees = compute_fees(Decimal("0.2800"), schedule)
    assert fees["brokerage"] == Decimal("0.0001")
    assert fees["tax_on_brokerage"] == Decimal("0.0001")


def test_zero_gross_means_zero_fees():
    fees = compute_fees(Decimal("0"), FeeSchedule())
    assert all(v == Decimal("0") for v in fees.values())
    assert fees == zero_fees()


def test_custom_schedule():
    schedule = FeeSchedule(
        brokerage_bps=Decimal("10"),
        transaction_tax_bps=Decimal("0"),
        exchange_fee_bps=Decimal("0"),
        regulatory_fee_bps=Decimal("0"),
        tax_on_brokerage_pct=Decimal("0"),
    )
    fees = compute_fees(Decimal("10000.0000"), schedule)
    assert fees["brokerage"] == Decimal("10.0000")
    assert fees["total"] == Decimal("10.0000")
