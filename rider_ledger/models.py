from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementStatus(str, Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    BLOCKED = "blocked"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class TransactionKind(str, Enum):
    DELIVERY = "delivery"
    BONUS = "bonus"


class EventName(str, Enum):
    ORDER_UPDATED = "order_updated"
    BONUS_PROGRESS_UPDATED = "bonus_progress_updated"
    BONUS_ACHIEVED = "bonus_achieved"
    STATS_UPDATED = "stats_updated"


# ---------------------------------------------------------------------------
# Stored records. Frozen: a commit replaces a record, it never edits one.
# ---------------------------------------------------------------------------


class RiderLedgerAccount(BaseModel):
    rider_id: str
    cod_balance: int = 0
    earnings_balance: int = 0
    settlement_status: SettlementStatus = SettlementStatus.ACTIVE
    last_settlement_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @property
    def is_blocked(self) -> bool:
        return self.settlement_status == SettlementStatus.BLOCKED


class LedgerTransaction(BaseModel):
    id: UUID
    rider_id: str
    order_id: Optional[str] = None
    kind: TransactionKind = TransactionKind.DELIVERY
    cod_collected: int
    rider_earning: int
    admin_net: int
    settled_amount: int = 0
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    settled_at: Optional[datetime] = None
    batch_id: Optional[UUID] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    def outstanding(self) -> int:
        """Cash from this delivery still held by the rider."""
        if self.status == TransactionStatus.SETTLED:
            return 0
        return self.cod_collected - self.settled_amount


class SettlementBatch(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    rider_id: str
    amount_collected: int
    earnings_paid: int
    settled_at: datetime
    settled_by: Optional[str] = None
    transaction_ids: list[UUID] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, from_attributes=True)


class BonusProgress(BaseModel):
    rider_id: str
    date: date
    daily_delivery_count: int = 0
    target_deliveries: int
    bonus_amount: int
    is_bonus_achieved: bool = False
    bonus_credited_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)


class LedgerEvent(BaseModel):
    sequence: int
    name: EventName
    rider_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class DeliveryCompletedRequest(BaseModel):
    order_id: str = Field(..., description="Idempotency key for the delivery")
    rider_id: str
    order_total: int = Field(..., ge=0, description="Order total in minor units")
    commission_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)
    is_cod: bool
    delivery_fee: Optional[int] = Field(default=None, ge=0)
    delivered_on: Optional[date] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "order_id": "ORD-10293",
            "rider_id": "rider-42",
            "order_total": 1850,
            "commission_rate": "0.10",
            "is_cod": True,
            "delivery_fee": 150,
        }
    })


class SettleRequest(BaseModel):
    amount_collected: int
    earnings_paid: int = 0
    settled_by: Optional[str] = None


class BlockRequest(BaseModel):
    blocked: bool
    performed_by: Optional[str] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PostingResult(BaseModel):
    transaction: LedgerTransaction
    account: RiderLedgerAccount
    created: bool


class SettlementResult(BaseModel):
    batch: SettlementBatch
    account: RiderLedgerAccount
    settled_transactions: list[LedgerTransaction]


class BlockResult(BaseModel):
    account: RiderLedgerAccount
    previous_status: SettlementStatus
    message: str


class BonusResult(BaseModel):
    progress: BonusProgress
    counted: bool
    credited: bool


class DeliverySplit(BaseModel):
    order_total: int
    commission_rate: Decimal
    commission_amount: int
    cod_collected: int
    rider_earning: int
    admin_net: int


class IngestResult(BaseModel):
    order_id: str
    rider_id: str
    split: DeliverySplit
    posting: PostingResult
    bonus: BonusResult
    duplicate: bool = False


class SweepResult(BaseModel):
    evaluated: int
    changed: dict[str, SettlementStatus] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class RiderSummary(BaseModel):
    rider_id: str
    cod_balance: int
    earnings_balance: int
    settlement_status: SettlementStatus
    last_settlement_date: Optional[datetime] = None
    over_threshold: bool = False


class FleetTotals(BaseModel):
    total_riders: int
    cash_in_field: int
    pending_payouts: int
    admin_net_outstanding: int
    active_count: int
    overdue_count: int
    blocked_count: int
    currency: str
    as_of_version: int


class PendingTransactionView(BaseModel):
    transaction_id: UUID
    order_id: Optional[str]
    collected: int
    fee: int
    net: int
    outstanding: int
    created_at: datetime


class PendingBreakdown(BaseModel):
    rider_id: str
    transactions: list[PendingTransactionView]
    total_collected: int
    total_fee: int
    total_net: int
    total_outstanding: int


class BonusStatus(BaseModel):
    rider_id: str
    current: BonusProgress
    history: list[BonusProgress]


class LedgerHistoryResponse(BaseModel):
    rider_id: str
    entries: list[LedgerTransaction]
    total_count: int


class ReconciliationReport(BaseModel):
    rider_id: str
    cached_cod_balance: int
    replayed_cod_balance: int
    cached_earnings_balance: int
    replayed_earnings_balance: int
    consistent: bool
