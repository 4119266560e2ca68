from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import uuid

GRANT = "grant"
REVERSAL = "reversal"
REWARD_KINDS = (GRANT, REVERSAL)

INSTRUMENT_INVENTORY = "instrument_inventory"
CASH_OUTFLOW = "cash_outflow"
FEES_EXPENSE = "fees_expense"

# fixed namespace so posting group ids can be re-derived from a reward id
POSTING_GROUP_NAMESPACE = uuid.UUID("6f1c2a52-8d0e-4c1b-9a53-2b7d0c4e9f10")


def posting_group_id_for(reward_id: int) -> uuid.UUID:
    return uuid.uuid5(POSTING_GROUP_NAMESPACE, f"reward-{reward_id}")


@dataclass(frozen=True)
class RewardRequest:
    idempotency_key: str
    user_id: str
    symbol: str
    quantity: Decimal
    kind: str = GRANT
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    granted_at: Optional[datetime] = None


@dataclass(frozen=True)
class RewardRecord:
    """one persisted grant (or reversal) event. never mutated once stored."""

    id: int
    idempotency_key: str
    user_id: str
    symbol: str
    kind: str
    quantity: Decimal
    price_per_unit: Decimal
    gross_value: Decimal
    fees: Dict[str, Decimal]
    total_fees: Decimal
    total_cost: Decimal
    reason: Optional[str]
    metadata: Optional[Dict[str, Any]]
    granted_at: datetime
    recorded_at: datetime

    @property
    def posting_group_id(self) -> uuid.UUID:
        return posting_group_id_for(self.id)


@dataclass(frozen=True)
class HoldingPosition:
    user_id: str
    symbol: str
    total_quantity: Decimal
    cost_basis: Decimal
    average_cost: Decimal
    last_updated: datetime


@dataclass(frozen=True)
class LedgerPosting:
    posting_group_id: uuid.UUID
    reward_id: int
    account_type: str
    debit_amount: Decimal
    credit_amount: Decimal
    description: str
    created_at: datetime
    symbol: Optional[str] = None


@dataclass(frozen=True)
class Instrument:
    symbol: str
    display_name: str
    venue: str = "NSE"
    is_active: bool = True


@dataclass(frozen=True)
class PriceSnapshot:
    symbol: str
    price: Decimal
    captured_at: datetime
    source: str = "mock"


@dataclass
class GrantOutcome:
    """what a grant call hands back to its caller."""

    record: RewardRecord
    replayed: bool = False
    warnings: list = field(default_factory=list)
