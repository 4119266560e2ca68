"""
read-only projections over reward records and holdings.

these are plain functions over already-loaded rows so the memory and
postgres backends can share them; day boundaries are taken in the
configured timezone.
"""
from collections import OrderedDict
from datetime import datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Tuple
from zoneinfo import ZoneInfo

from fee_engine import quantize_quantity
from models import HoldingPosition, Instrument, RewardRecord

CENT = Decimal("0.01")
ZERO = Decimal("0")


def quantize_display(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def day_bounds(now: datetime, tz_name: str) -> Tuple[datetime, datetime]:
    """[start, end) of the calendar day containing `now` in tz_name."""
    tz = ZoneInfo(tz_name)
    local_day = now.astimezone(tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    return start, start + timedelta(days=1)


def today_rewards(records: Iterable[RewardRecord], now: datetime, tz_name: str) -> List[RewardRecord]:
    start, end = day_bounds(now, tz_name)
    todays = [r for r in records if start <= r.granted_at < end]
    return sorted(todays, key=lambda r: (r.granted_at, r.id), reverse=True)


def historical_value(records: Iterable[RewardRecord], now: datetime, tz_name: str) -> Dict[str, Any]:
    """
    value granted per calendar day, for every day before today.
    value is the gross value at grant time (reversals count negative).
    """
    tz = ZoneInfo(tz_name)
    start_of_today, _ = day_bounds(now, tz_name)

    daily: Dict[str, Decimal] = {}
    for r in records:
        if r.granted_at >= start_of_today:
            continue
        day = r.granted_at.astimezone(tz).date().isoformat()
        daily[day] = daily.get(day, ZERO) + r.gross_value

    ordered = OrderedDict(sorted(daily.items()))
    return {
        "daily": [
            {"date": day, "total_value": quantize_display(value)}
            for day, value in ordered.items()
        ],
        "total_value": quantize_display(sum(ordered.values(), ZERO)),
    }


def portfolio(
    positions: Iterable[HoldingPosition],
    prices: Mapping[str, Decimal],
    instruments: Mapping[str, Instrument],
) -> Dict[str, Any]:
    """
    value every non-empty holding at the latest price. when a symbol has no
    price yet, value it at its average cost (zero P/L) instead of dropping it.
    """
    holdings = []
    total_value = ZERO
    total_cost = ZERO

    for pos in sorted(positions, key=lambda p: p.symbol):
        if pos.total_quantity <= 0:
            continue

        current_price = prices.get(pos.symbol)
        if current_price is None or current_price <= 0:
            current_price = pos.average_cost

        current_value = pos.total_quantity * current_price
        cost = pos.cost_basis
        profit_loss = current_value - cost
        profit_loss_pct = (profit_loss / cost * 100) if cost > 0 else ZERO

        instrument = instruments.get(pos.symbol)
        holdings.append(
            {
                "symbol": pos.symbol,
                "display_name": instrument.display_name if instrument else pos.symbol,
                "total_quantity": quantize_quantity(pos.total_quantity),
                "average_cost": quantize_display(pos.average_cost),
                "current_price": quantize_display(current_price),
                "current_value": quantize_display(current_value),
                "total_cost": quantize_display(cost),
                "profit_loss": quantize_display(profit_loss),
                "profit_loss_pct": quantize_display(profit_loss_pct),
            }
        )
        total_value += current_value
        total_cost += cost

    return {
        "summary": {
            "total_value": quantize_display(total_value),
            "total_cost": quantize_display(total_cost),
            "total_profit_loss": quantize_display(total_value - total_cost),
            "holdings_count": len(holdings),
        },
        "holdings": holdings,
    }


def user_stats(todays: Iterable[RewardRecord], valuation: Dict[str, Any]) -> Dict[str, Any]:
    """today's rewards grouped per symbol plus current portfolio value."""
    per_symbol: Dict[str, Dict[str, Any]] = {}
    total_quantity = ZERO

    for r in todays:
        summary = per_symbol.setdefault(
            r.symbol, {"symbol": r.symbol, "total_quantity": ZERO, "reward_count": 0}
        )
        summary["total_quantity"] += r.quantity
        summary["reward_count"] += 1
        total_quantity += r.quantity

    return {
        "today_rewards": [
            {**s, "total_quantity": quantize_quantity(s["total_quantity"])}
            for _, s in sorted(per_symbol.items())
        ],
        "portfolio_value": valuation["summary"]["total_value"],
        "total_quantity_rewarded_today": quantize_quantity(total_quantity),
    }
