from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

MONEY_QUANT = Decimal("0.0001")  # 4 dp for prices, values and fees
QUANTITY_QUANT = Decimal("0.000001")  # 6 dp for fractional units
BASIS_QUANT = Decimal("0.0000000001")  # exact q * p at 6 + 4 dp

BPS_DIVISOR = Decimal("10000")
PERCENT_DIVISOR = Decimal("100")

FEE_COMPONENTS = (
    "brokerage",
    "transaction_tax",
    "tax_on_brokerage",
    "exchange_fee",
    "regulatory_fee",
)


def quantize_money(value) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def quantize_quantity(value) -> Decimal:
    return Decimal(value).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def quantize_basis(value) -> Decimal:
    return Decimal(value).quantize(BASIS_QUANT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeSchedule:
    """
    process-wide fee rates.
    everything is in basis points of gross value, except tax_on_brokerage_pct
    which is a percentage of the (unrounded) brokerage amount.
    """

    brokerage_bps: Decimal = Decimal("5")
    transaction_tax_bps: Decimal = Decimal("25")
    exchange_fee_bps: Decimal = Decimal("3")
    regulatory_fee_bps: Decimal = Decimal("1")
    tax_on_brokerage_pct: Decimal = Decimal("18")


def compute_fees(gross_value, schedule: FeeSchedule) -> Dict[str, Decimal]:
    """
    gross_value: Decimal (quantity * price, already at 4 dp)
    schedule: FeeSchedule

    returns {brokerage, transaction_tax, tax_on_brokerage, exchange_fee,
    regulatory_fee, total}. each component is rounded half-up to 4 dp on its
    own; total is the sum of the rounded components.
    """
    gross = Decimal(gross_value)

    brokerage_raw = gross * Decimal(schedule.brokerage_bps) / BPS_DIVISOR
    fees = {
        "brokerage": quantize_money(brokerage_raw),
        "transaction_tax": quantize_money(
            gross * Decimal(schedule.transaction_tax_bps) / BPS_DIVISOR
        ),
        "tax_on_brokerage": quantize_money(
            brokerage_raw * Decimal(schedule.tax_on_brokerage_pct) / PERCENT_DIVISOR
        ),
        "exchange_fee": quantize_money(
            gross * Decimal(schedule.exchange_fee_bps) / BPS_DIVISOR
        ),
        "regulatory_fee": quantize_money(
            gross * Decimal(schedule.regulatory_fee_bps) / BPS_DIVISOR
        ),
    }

    fees["total"] = quantize_money(sum(fees[name] for name in FEE_COMPONENTS))
    return fees


def zero_fees() -> Dict[str, Decimal]:
    fees = {name: quantize_money(0) for name in FEE_COMPONENTS}
    fees["total"] = quantize_money(0)
    return fees
