from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TransactionType(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    BONUS = "bonus"
    PENALTY = "penalty"
    REFUND = "refund"

    @property
    def is_debit(self) -> bool:
        return self in {TransactionType.SPEND, TransactionType.PENALTY}


REFERENCE_TYPE_QUEUE_REQUEST = "queue_request"


@dataclass(slots=True)
class LedgerTransactionResult:
    transaction_id: int
    user_id: str
    venue_id: str
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    description: str
    reference_id: str | None
    reference_type: str | None
    created_at: datetime
    idempotent_replay: bool
    metadata: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class PointsHistoryPage:
    transactions: list[LedgerTransactionResult]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass(slots=True)
class BalanceAudit:
    user_id: str
    venue_id: str
    stored_balance: int
    replayed_balance: int
    transactions_count: int
    chain_breaks: int

    @property
    def has_drift(self) -> bool:
        return self.stored_balance != self.replayed_balance or self.chain_breaks > 0


@dataclass(slots=True)
class VenuePointsSummary:
    venue_id: str
    total_users: int
    total_points_earned: int
    total_points_spent: int
    total_points_in_circulation: int
    volume_by_type: dict[str, int]
