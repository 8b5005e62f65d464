import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from .errors import InsufficientFundsError, InvalidRequestError
from .models import (
    BYTES_PER_GB,
    JobOutcome,
    JobReport,
    JobResult,
    StorageAccount,
    StoragePurchaseResult,
    TransactionType,
    period_key,
)
from .service import LedgerService, utcnow

logger = logging.getLogger(__name__)


def _ceil_gb(num_bytes: int) -> int:
    return -(-num_bytes // BYTES_PER_GB)


def monthly_cost_points(limit_bytes: int, cost_per_gb: int) -> int:
    """Recurring cost of a storage limit; the first GB is free."""
    billable_gb = max(0, _ceil_gb(limit_bytes - BYTES_PER_GB))
    return billable_gb * cost_per_gb


class StorageBillingService:
    """Storage purchases, downgrades and the monthly storage charge."""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def get_storage_account(self, user_id: UUID) -> StorageAccount:
        with self.storage.locked(user_id):
            return StorageAccount(**self._load_account(user_id))

    def record_storage_usage(self, user_id: UUID, total_used_bytes: int) -> StorageAccount:
        if total_used_bytes < 0:
            raise InvalidRequestError("Storage usage cannot be negative")

        with self.storage.locked(user_id):
            account = self._load_account(user_id)
            account["total_used_bytes"] = total_used_bytes
            self._save_account(account)
            return StorageAccount(**account)

    def purchase_storage(self, user_id: UUID, additional_gb: int) -> StoragePurchaseResult:
        if isinstance(additional_gb, bool) or not isinstance(additional_gb, int) or additional_gb <= 0:
            raise InvalidRequestError("Invalid storage amount")

        pricing = self.ledger.get_pricing()
        cost = additional_gb * pricing.storage_purchase_price_per_gb

        with self.storage.locked(user_id):
            account = self._load_account(user_id)
            # Raises before the limit is touched when the wallet cannot cover it
            transfer = self.ledger.spend_points(
                user_id,
                cost,
                type=TransactionType.POINT_SPEND,
                description=f"Purchased {additional_gb} GB of storage",
            )
            account["limit_bytes"] += additional_gb * BYTES_PER_GB
            account["monthly_cost_points"] = monthly_cost_points(
                account["limit_bytes"], pricing.storage_monthly_cost_per_gb
            )
            self._save_account(account)

        logger.info(
            "User %s bought %s GB for %s points; limit now %s GB",
            user_id, additional_gb, cost, account["limit_bytes"] // BYTES_PER_GB,
        )
        return StoragePurchaseResult(
            account=StorageAccount(**account),
            transaction=transfer.debit,
            points_deducted=cost,
        )

    def downgrade_storage(self, user_id: UUID, new_limit_gb: int) -> StorageAccount:
        if isinstance(new_limit_gb, bool) or not isinstance(new_limit_gb, int) or new_limit_gb < 0:
            raise InvalidRequestError("Invalid storage amount")

        pricing = self.ledger.get_pricing()

        with self.storage.locked(user_id):
            account = self._load_account(user_id)
            used_gb = _ceil_gb(account["total_used_bytes"])
            if new_limit_gb < used_gb:
                raise InvalidRequestError(
                    f"Cannot reduce storage below current usage of {used_gb} GB"
                )
            if new_limit_gb * BYTES_PER_GB >= account["limit_bytes"]:
                raise InvalidRequestError("New storage limit must be lower than the current limit")

            account["limit_bytes"] = new_limit_gb * BYTES_PER_GB
            account["monthly_cost_points"] = monthly_cost_points(
                account["limit_bytes"], pricing.storage_monthly_cost_per_gb
            )
            self._save_account(account)

        logger.info("User %s downgraded storage to %s GB", user_id, new_limit_gb)
        return StorageAccount(**account)

    def run_monthly_storage_billing(self, as_of: Optional[datetime] = None) -> JobReport:
        """Charge every account with a recurring cost once for the month of ``as_of``.

        Accounts that cannot pay are flagged for the period and left for a
        later run; accounts already charged for the period are reported as
        duplicates and untouched.
        """
        period = period_key(as_of or utcnow())
        report = JobReport(period=period)

        candidates = self.storage.snapshot(
            self.storage.storage_accounts, lambda a: a["monthly_cost_points"] > 0
        )
        for candidate in sorted(candidates, key=lambda a: str(a["user_id"])):
            report.results.append(self._bill_account(candidate["user_id"], period))

        logger.info("Storage billing for %s finished: %s", period, report.summary)
        return report

    def list_flagged_accounts(self, period: str) -> list[StorageAccount]:
        rows = self.storage.snapshot(
            self.storage.storage_accounts, lambda a: a["billing_flagged_period"] == period
        )
        return [StorageAccount(**r) for r in rows]

    def _bill_account(self, user_id: UUID, period: str) -> JobResult:
        key = (user_id, period)

        with self.storage.locked(user_id):
            existing = self.storage.storage_billing_index.get(key)
            if existing is not None:
                return JobResult(
                    user_id=user_id,
                    outcome=JobOutcome.DUPLICATE_PERIOD,
                    transaction_id=existing,
                    reason="already_billed",
                )

            account = self._load_account(user_id)
            cost = account["monthly_cost_points"]
            if cost <= 0:
                return JobResult(user_id=user_id, outcome=JobOutcome.SKIPPED, reason="no_cost")

            try:
                transfer = self.ledger.spend_points(
                    user_id,
                    cost,
                    type=TransactionType.STORAGE_CHARGE,
                    description=f"Storage charge for {period}",
                    billing_period=period,
                )
            except InsufficientFundsError as e:
                account["billing_flagged_period"] = period
                self._save_account(account)
                logger.warning("Storage charge for %s in %s skipped: %s", user_id, period, e)
                return JobResult(
                    user_id=user_id,
                    outcome=JobOutcome.INSUFFICIENT_FUNDS,
                    points=cost,
                    reason=str(e),
                )

            self.storage.claim_period(self.storage.storage_billing_index, key, transfer.debit.id)
            account["last_billed_period"] = period
            if account["billing_flagged_period"] == period:
                account["billing_flagged_period"] = None
            self._save_account(account)

        return JobResult(
            user_id=user_id,
            outcome=JobOutcome.CHARGED,
            transaction_id=transfer.debit.id,
            points=cost,
        )

    def _load_account(self, user_id: UUID) -> dict:
        # Caller holds the user's lock. Returns a copy; nothing is stored until _save_account.
        row = self.storage.storage_accounts.get(user_id)
        if row is None:
            return {
                "user_id": user_id,
                "total_used_bytes": 0,
                "limit_bytes": 0,
                "monthly_cost_points": 0,
                "last_billed_period": None,
                "billing_flagged_period": None,
                "updated_at": None,
            }
        return dict(row)

    def _save_account(self, account: dict) -> None:
        account["updated_at"] = utcnow()
        self.storage.insert(self.storage.storage_accounts, account, key=account["user_id"])
