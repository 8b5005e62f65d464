from datetime import datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

BYTES_PER_GB = 2 ** 30
PLATFORM_SCOPE = "platform"
CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def period_key(moment: datetime) -> str:
    """Calendar-month key used for payouts and storage billing, e.g. ``2025-11``."""
    return moment.strftime("%Y-%m")


class TransactionType(str, Enum):
    TOP_UP = "top_up"
    POINT_SPEND = "point_spend"
    BOOST = "boost"
    STORAGE_CHARGE = "storage_charge"
    PAYOUT_SETTLEMENT = "payout_settlement"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SpendType(str, Enum):
    """Spend types a caller may request; storage charges are written by billing only."""
    POINT_SPEND = "point_spend"
    BOOST = "boost"


class JobOutcome(str, Enum):
    CREATED = "created"
    CHARGED = "charged"
    DUPLICATE_PERIOD = "duplicate_period"
    SKIPPED = "skipped"
    INSUFFICIENT_FUNDS = "insufficient_funds"


SPEND_TYPES = frozenset({
    TransactionType.POINT_SPEND,
    TransactionType.BOOST,
    TransactionType.STORAGE_CHARGE,
})

ACTIVE_PAYOUT_STATUSES = frozenset({PayoutStatus.PENDING, PayoutStatus.PROCESSING})


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

class PricingConfig(BaseModel):
    point_buy_price: Decimal = Field(..., gt=0, description="Currency paid out to creators per point")
    point_user_value: Decimal = Field(..., gt=0, description="Currency a user pays per point")
    storage_purchase_price_per_gb: int = Field(..., gt=0, description="One-time points per extra GB")
    storage_monthly_cost_per_gb: int = Field(..., gt=0, description="Recurring points per billable GB")
    mandatory_top_up_minimum: Decimal = Field(default=Decimal("0"), ge=0)
    payout_minimum_amount: Decimal = Field(default=Decimal("0"), ge=0)
    earnings_hold_seconds: int = Field(default=0, ge=0, description="Age a peer credit needs before it is payable")
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def points_for_amount(self, amount: Decimal) -> int:
        return int((Decimal(amount) / self.point_user_value).to_integral_value(rounding=ROUND_FLOOR))

    def payout_amount(self, points: int) -> Decimal:
        return money(Decimal(points) * self.point_buy_price)


class PricingConfigUpdate(BaseModel):
    point_buy_price: Optional[Decimal] = Field(default=None, gt=0)
    point_user_value: Optional[Decimal] = Field(default=None, gt=0)
    storage_purchase_price_per_gb: Optional[int] = Field(default=None, gt=0)
    storage_monthly_cost_per_gb: Optional[int] = Field(default=None, gt=0)
    mandatory_top_up_minimum: Optional[Decimal] = Field(default=None, ge=0)
    payout_minimum_amount: Optional[Decimal] = Field(default=None, ge=0)
    earnings_hold_seconds: Optional[int] = Field(default=None, ge=0)
    updated_by: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "point_buy_price": "0.80",
            "point_user_value": "1.00",
            "updated_by": "admin@example.com"
        }
    })


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    type: TransactionType
    points_delta: int
    status: TransactionStatus
    amount_in_currency: Optional[Decimal] = None
    recipient_user_id: Optional[UUID] = None
    counterparty_transaction_id: Optional[UUID] = None
    bank_account_ref: Optional[UUID] = None
    receipt_ref: Optional[str] = None
    payout_id: Optional[UUID] = None
    billing_period: Optional[str] = None
    description: str = ""
    rejection_reason: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == TransactionStatus.PENDING


class WalletBalance(BaseModel):
    user_id: UUID
    balance: int
    locked_points: int
    earned_points: int = 0
    maturing_points: int = 0
    pending_top_ups: int = 0


class TransferResult(BaseModel):
    debit: Transaction
    credit: Optional[Transaction] = None
    spender_balance: int


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: int


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------

class Payout(BaseModel):
    id: UUID
    user_id: UUID
    gross_points: int
    locked_points: int
    amount_in_currency: Decimal
    status: PayoutStatus
    scheduled_for: str
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    settlement_transaction_id: Optional[UUID] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_process(self) -> bool:
        return self.status == PayoutStatus.PENDING

    def can_cancel(self) -> bool:
        return self.status in ACTIVE_PAYOUT_STATUSES

    def can_complete(self) -> bool:
        return self.status in ACTIVE_PAYOUT_STATUSES


# ---------------------------------------------------------------------------
# Withdrawals and bank accounts
# ---------------------------------------------------------------------------

class BankAccount(BaseModel):
    id: UUID
    owner_scope: str = PLATFORM_SCOPE
    account_name: str
    bank_name: str
    account_number: str
    account_type: str = "checking"
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Withdrawal(BaseModel):
    id: UUID
    bank_account_ref: UUID
    amount_in_currency: Decimal
    status: WithdrawalStatus
    requested_by: str
    requested_at: datetime
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageAccount(BaseModel):
    user_id: UUID
    total_used_bytes: int = 0
    limit_bytes: int = 0
    monthly_cost_points: int = 0
    last_billed_period: Optional[str] = None
    billing_flagged_period: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def limit_gb(self) -> int:
        return self.limit_bytes // BYTES_PER_GB


class StoragePurchaseResult(BaseModel):
    account: StorageAccount
    transaction: Transaction
    points_deducted: int


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------

class JobResult(BaseModel):
    user_id: UUID
    outcome: JobOutcome
    payout_id: Optional[UUID] = None
    transaction_id: Optional[UUID] = None
    points: int = 0
    reason: Optional[str] = None


class JobReport(BaseModel):
    period: str
    results: list[JobResult] = Field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.results:
            counts[item.outcome.value] = counts.get(item.outcome.value, 0) + 1
        return counts

    def outcome_for(self, user_id: UUID) -> Optional[JobResult]:
        for item in self.results:
            if item.user_id == user_id:
                return item
        return None


class JobReportResponse(BaseModel):
    period: str
    summary: dict[str, int]
    results: list[JobResult]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TopUpRequest(BaseModel):
    user_id: UUID
    amount_in_currency: Decimal = Field(..., gt=0, decimal_places=2)
    bank_account_ref: UUID
    receipt_ref: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount_in_currency": "150.00",
            "bank_account_ref": "11111111-1111-1111-1111-111111111111",
            "receipt_ref": "receipts/2025/11/transfer-0042.png"
        }
    })


class ResolveTransactionRequest(BaseModel):
    performed_by: Optional[str] = None


class RejectTransactionRequest(BaseModel):
    reason: str = Field(..., description="Reason for rejection")
    performed_by: Optional[str] = None


class SpendPointsRequest(BaseModel):
    spender_id: UUID
    points: int = Field(..., gt=0)
    recipient_id: Optional[UUID] = None
    type: SpendType = SpendType.POINT_SPEND
    description: Optional[str] = None


class PurchaseStorageRequest(BaseModel):
    user_id: UUID
    additional_gb: int = Field(..., gt=0)


class DowngradeStorageRequest(BaseModel):
    user_id: UUID
    new_limit_gb: int = Field(..., ge=0)


class StorageUsageRequest(BaseModel):
    user_id: UUID
    total_used_bytes: int = Field(..., ge=0)


class ScheduledJobRequest(BaseModel):
    as_of: Optional[datetime] = None


class PayoutActionRequest(BaseModel):
    performed_by: Optional[str] = None


class CancelPayoutRequest(BaseModel):
    reason: str
    performed_by: Optional[str] = None


class CompletePayoutRequest(BaseModel):
    processed_by: str
    settled_amount_in_currency: Decimal = Field(..., ge=0)


class CreateBankAccountRequest(BaseModel):
    account_name: str
    bank_name: str
    account_number: str
    account_type: str = "checking"
    owner_scope: str = PLATFORM_SCOPE


class CreateWithdrawalRequest(BaseModel):
    bank_account_ref: UUID
    amount_in_currency: Decimal = Field(..., gt=0)
    requested_by: str
    notes: Optional[str] = None


class WithdrawalActionRequest(BaseModel):
    processed_by: str
    notes: Optional[str] = None
