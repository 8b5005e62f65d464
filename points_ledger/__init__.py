"""
Points Ledger & Settlement Engine

This module provides:
- An immutable transaction ledger with derived wallet balances
- Top-up verification and atomic point transfers
- Monthly creator payouts: pending → processing → paid / cancelled
- Storage purchases and idempotent monthly storage billing
- Platform withdrawals from platform bank accounts
"""

from .models import (
    TransactionType,
    TransactionStatus,
    PayoutStatus,
    WithdrawalStatus,
    JobOutcome,
    PricingConfig,
    Transaction,
    WalletBalance,
    Payout,
    Withdrawal,
    BankAccount,
    StorageAccount,
    JobReport,
)
from .errors import (
    LedgerServiceError,
    NotFoundError,
    InvalidStateTransitionError,
    InvalidRequestError,
    InsufficientFundsError,
    BelowMinimumError,
)
from .storage import InMemoryStorage
from .service import LedgerService
from .billing import StorageBillingService
from .payouts import PayoutService
from .withdrawals import WithdrawalService

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "PayoutStatus",
    "WithdrawalStatus",
    "JobOutcome",
    "PricingConfig",
    "Transaction",
    "WalletBalance",
    "Payout",
    "Withdrawal",
    "BankAccount",
    "StorageAccount",
    "JobReport",
    "LedgerServiceError",
    "NotFoundError",
    "InvalidStateTransitionError",
    "InvalidRequestError",
    "InsufficientFundsError",
    "BelowMinimumError",
    "InMemoryStorage",
    "LedgerService",
    "StorageBillingService",
    "PayoutService",
    "WithdrawalService",
]
