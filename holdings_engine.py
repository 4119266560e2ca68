from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from errors import InsufficientHoldings
from fee_engine import quantize_basis, quantize_money, quantize_quantity
from models import HoldingPosition

ZERO = Decimal("0")


def average_cost_of(total_quantity: Decimal, cost_basis: Decimal) -> Decimal:
    if total_quantity <= 0:
        return quantize_money(ZERO)
    return quantize_money(cost_basis / total_quantity)


def apply_grant(
    position: Optional[HoldingPosition],
    user_id: str,
    symbol: str,
    quantity,
    price,
    now: datetime,
) -> HoldingPosition:
    """
    fold one reward into a (user, symbol) position and return the new state.

    positive quantity (grant):
        total_quantity += q
        cost_basis     += q * price
        average_cost    = cost_basis / total_quantity
    we carry the exact cost basis instead of re-multiplying a rounded
    average, so many small grants do not drift.

    negative quantity (reversal):
        units leave at the current average cost, so the average stays put.
        raises InsufficientHoldings if the position would go below zero;
        the input position is never modified (positions are immutable).
    """
    quantity = quantize_quantity(quantity)
    price = Decimal(price)

    old_quantity = position.total_quantity if position is not None else ZERO
    old_basis = position.cost_basis if position is not None else ZERO

    new_quantity = old_quantity + quantity
    if new_quantity < 0:
        raise InsufficientHoldings(
            f"User {user_id} holds {old_quantity} {symbol}; "
            f"cannot remove {-quantity}."
        )

    if quantity >= 0:
        new_basis = quantize_basis(old_basis + quantity * price)
    elif new_quantity == 0:
        new_basis = quantize_basis(ZERO)
    else:
        new_basis = quantize_basis(old_basis * new_quantity / old_quantity)

    return HoldingPosition(
        user_id=user_id,
        symbol=symbol,
        total_quantity=new_quantity,
        cost_basis=new_basis,
        average_cost=average_cost_of(new_quantity, new_basis),
        last_updated=now,
    )


def fold_grants(
    user_id: str,
    symbol: str,
    grants: Iterable,
    now: datetime,
) -> Optional[HoldingPosition]:
    """apply (quantity, price) pairs in order, starting from no position."""
    position = None
    for quantity, price in grants:
        position = apply_grant(position, user_id, symbol, quantity, price, now)
    return position
