import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import InvalidRequestError, InvalidStateTransitionError, NotFoundError
from .models import (
    PLATFORM_SCOPE,
    BankAccount,
    Withdrawal,
    WithdrawalStatus,
    money,
)
from .service import utcnow
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    WithdrawalStatus.PENDING: {
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.CANCELLED,
        WithdrawalStatus.FAILED,
    },
    WithdrawalStatus.PROCESSING: {
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.CANCELLED,
        WithdrawalStatus.FAILED,
    },
}


class WithdrawalService:
    """Platform bank accounts and administrator-initiated withdrawals.

    Withdrawals move currency out of platform bank accounts and never touch a
    user's point balance.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    # ------------------------------------------------------------------
    # Bank accounts
    # ------------------------------------------------------------------

    def add_bank_account(
        self,
        account_name: str,
        bank_name: str,
        account_number: str,
        account_type: str = "checking",
        owner_scope: str = PLATFORM_SCOPE,
    ) -> BankAccount:
        if not account_number.strip():
            raise InvalidRequestError("Account number is required")

        row = {
            "id": uuid4(),
            "owner_scope": owner_scope,
            "account_name": account_name,
            "bank_name": bank_name,
            "account_number": account_number.strip(),
            "account_type": account_type,
            "is_active": True,
            "created_at": utcnow(),
        }
        self.storage.insert(self.storage.bank_accounts, row)
        logger.info("Added bank account %s (%s, scope=%s)", row["id"], bank_name, owner_scope)
        return BankAccount(**row)

    def deactivate_bank_account(self, bank_account_id: UUID) -> BankAccount:
        row = self._get_bank_row(bank_account_id)
        with self.storage.locked(bank_account_id):
            row["is_active"] = False
        logger.info("Deactivated bank account %s", bank_account_id)
        return BankAccount(**row)

    def get_bank_account(self, bank_account_id: UUID) -> BankAccount:
        return BankAccount(**self._get_bank_row(bank_account_id))

    def list_bank_accounts(self, owner_scope: Optional[str] = None, active_only: bool = False) -> list[BankAccount]:
        rows = self.storage.snapshot(
            self.storage.bank_accounts,
            lambda r: (owner_scope is None or r["owner_scope"] == owner_scope)
            and (not active_only or r["is_active"]),
        )
        rows.sort(key=lambda r: r["created_at"])
        return [BankAccount(**r) for r in rows]

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def request_withdrawal(
        self,
        bank_account_ref: UUID,
        amount_in_currency: Decimal,
        requested_by: str,
        notes: Optional[str] = None,
    ) -> Withdrawal:
        amount = money(amount_in_currency)
        if amount <= 0:
            raise InvalidRequestError("Withdrawal amount must be greater than zero")

        account = self._get_bank_row(bank_account_ref)

        with self.storage.locked(bank_account_ref):
            if not account["is_active"]:
                raise InvalidRequestError(f"Bank account {bank_account_ref} is inactive")
            if account["owner_scope"] != PLATFORM_SCOPE:
                raise InvalidRequestError("Withdrawals can only be made from platform bank accounts")

            row = {
                "id": uuid4(),
                "bank_account_ref": bank_account_ref,
                "amount_in_currency": amount,
                "status": WithdrawalStatus.PENDING,
                "requested_by": requested_by,
                "requested_at": utcnow(),
                "processed_by": None,
                "processed_at": None,
                "notes": notes,
            }
            self.storage.insert(self.storage.withdrawals, row)

        logger.info("Withdrawal %s of %s requested by %s", row["id"], amount, requested_by)
        return Withdrawal(**row)

    def mark_processing(self, withdrawal_id: UUID, processed_by: str, notes: Optional[str] = None) -> Withdrawal:
        return self._transition(withdrawal_id, WithdrawalStatus.PROCESSING, processed_by, notes)

    def complete_withdrawal(self, withdrawal_id: UUID, processed_by: str, notes: Optional[str] = None) -> Withdrawal:
        return self._transition(withdrawal_id, WithdrawalStatus.COMPLETED, processed_by, notes)

    def cancel_withdrawal(self, withdrawal_id: UUID, processed_by: str, notes: Optional[str] = None) -> Withdrawal:
        return self._transition(withdrawal_id, WithdrawalStatus.CANCELLED, processed_by, notes)

    def fail_withdrawal(self, withdrawal_id: UUID, processed_by: str, notes: Optional[str] = None) -> Withdrawal:
        return self._transition(withdrawal_id, WithdrawalStatus.FAILED, processed_by, notes)

    def get_withdrawal(self, withdrawal_id: UUID) -> Withdrawal:
        return Withdrawal(**self._get_row(withdrawal_id))

    def list_withdrawals(self, status: Optional[WithdrawalStatus] = None) -> list[Withdrawal]:
        rows = self.storage.snapshot(
            self.storage.withdrawals,
            (lambda r: r["status"] == status) if status else None,
        )
        rows.sort(key=lambda r: r["requested_at"], reverse=True)
        return [Withdrawal(**r) for r in rows]

    def _transition(
        self,
        withdrawal_id: UUID,
        new_status: WithdrawalStatus,
        processed_by: str,
        notes: Optional[str],
    ) -> Withdrawal:
        row = self._get_row(withdrawal_id)

        with self.storage.locked(withdrawal_id):
            current = row["status"]
            if new_status not in VALID_TRANSITIONS.get(current, set()):
                logger.warning(
                    "Refused withdrawal %s transition %s -> %s", withdrawal_id, current.value, new_status.value
                )
                raise InvalidStateTransitionError(
                    f"Invalid status transition: {current.value} -> {new_status.value}"
                )

            row["status"] = new_status
            row["processed_by"] = processed_by
            row["processed_at"] = utcnow()
            if notes is not None:
                row["notes"] = notes

        logger.info("Admin %s set withdrawal %s -> %s", processed_by, withdrawal_id, new_status.value)
        return Withdrawal(**row)

    def _get_row(self, withdrawal_id: UUID) -> dict:
        row = self.storage.withdrawals.get(withdrawal_id)
        if not row:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found")
        return row

    def _get_bank_row(self, bank_account_id: UUID) -> dict:
        row = self.storage.bank_accounts.get(bank_account_id)
        if not row:
            raise NotFoundError(f"Bank account {bank_account_id} not found")
        return row
