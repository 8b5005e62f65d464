import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    BelowMinimumError,
    InsufficientFundsError,
    InvalidRequestError,
    InvalidStateTransitionError,
    NotFoundError,
)
from .models import (
    ACTIVE_PAYOUT_STATUSES,
    SPEND_TYPES,
    LedgerHistoryResponse,
    PayoutStatus,
    PricingConfig,
    PricingConfigUpdate,
    Transaction,
    TransactionStatus,
    TransactionType,
    TransferResult,
    WalletBalance,
    money,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_peer_credit(row: dict) -> bool:
    return (
        row["type"] in (TransactionType.POINT_SPEND, TransactionType.BOOST)
        and row["points_delta"] > 0
        and row["counterparty_transaction_id"] is not None
    )


class LedgerService:
    """Transaction ledger, derived wallets and platform pricing."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def get_pricing(self) -> PricingConfig:
        return self.storage.pricing

    def update_pricing(self, update: PricingConfigUpdate) -> PricingConfig:
        changes = update.model_dump(exclude_none=True, exclude={"updated_by"})
        merged = self.storage.pricing.model_dump()
        merged.update(changes)
        merged["updated_at"] = utcnow()
        merged["updated_by"] = update.updated_by
        pricing = PricingConfig(**merged)
        # readers pick up the new object on their next read
        self.storage.pricing = pricing
        logger.info("Pricing updated by %s: %s", update.updated_by or "unknown", sorted(changes))
        return pricing

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    def get_wallet(self, user_id: UUID) -> WalletBalance:
        with self.storage.locked(user_id):
            return self.derive_wallet(user_id)

    def derive_wallet(self, user_id: UUID) -> WalletBalance:
        # Caller holds the user's lock.
        rows = self.storage.snapshot(self.storage.transactions, lambda r: r["user_id"] == user_id)
        payouts = self.storage.snapshot(self.storage.payouts, lambda p: p["user_id"] == user_id)

        verified = [r for r in rows if r["status"] == TransactionStatus.VERIFIED]
        total = sum(r["points_delta"] for r in verified)
        locked = sum(p["locked_points"] for p in payouts if p["status"] in ACTIVE_PAYOUT_STATUSES)
        settled = sum(p["locked_points"] for p in payouts if p["status"] == PayoutStatus.PAID)
        matured_before = utcnow() - timedelta(seconds=self.get_pricing().earnings_hold_seconds)
        credits = [r for r in verified if _is_peer_credit(r)]
        earned = sum(r["points_delta"] for r in credits if r["created_at"] <= matured_before)
        maturing = sum(r["points_delta"] for r in credits if r["created_at"] > matured_before)
        pending = sum(
            1 for r in rows
            if r["type"] == TransactionType.TOP_UP and r["status"] == TransactionStatus.PENDING
        )

        return WalletBalance(
            user_id=user_id,
            balance=total - locked,
            locked_points=locked,
            earned_points=max(0, earned - settled - locked),
            maturing_points=maturing,
            pending_top_ups=pending,
        )

    # ------------------------------------------------------------------
    # Top-ups
    # ------------------------------------------------------------------

    def record_top_up(
        self,
        user_id: UUID,
        amount_in_currency: Decimal,
        bank_account_ref: UUID,
        receipt_ref: Optional[str] = None,
    ) -> Transaction:
        amount = Decimal(str(amount_in_currency))
        if amount <= 0:
            raise InvalidRequestError("Top-up amount must be greater than zero")

        pricing = self.get_pricing()
        if amount < pricing.mandatory_top_up_minimum:
            raise BelowMinimumError(amount, pricing.mandatory_top_up_minimum)
        if amount != money(amount):
            raise InvalidRequestError("Top-up amount cannot have more than two decimal places")
        amount = money(amount)

        account = self.storage.bank_accounts.get(bank_account_ref)
        if not account:
            raise NotFoundError(f"Bank account {bank_account_ref} not found")
        if not account["is_active"]:
            raise InvalidRequestError(f"Bank account {bank_account_ref} is not accepting deposits")

        row = self._new_row(
            user_id=user_id,
            type=TransactionType.TOP_UP,
            points_delta=0,
            status=TransactionStatus.PENDING,
            amount_in_currency=amount,
            bank_account_ref=bank_account_ref,
            receipt_ref=receipt_ref,
            description=f"Top-up of {amount} awaiting verification",
        )
        self.storage.insert(self.storage.transactions, row)
        logger.info("Recorded top-up %s for user %s (%s)", row["id"], user_id, amount)
        return Transaction(**row)

    def verify_transaction(self, transaction_id: UUID, performed_by: Optional[str] = None) -> Transaction:
        row = self._get_row(transaction_id)

        with self.storage.locked(row["user_id"]):
            if not Transaction(**row).can_resolve():
                raise InvalidStateTransitionError(
                    f"Cannot verify transaction in {row['status'].value} state"
                )

            points = row["points_delta"]
            description = row["description"]
            if row["type"] == TransactionType.TOP_UP:
                points = self.get_pricing().points_for_amount(row["amount_in_currency"])
                description = f"Top-up of {row['amount_in_currency']} verified: {points} points"

            row.update(
                points_delta=points,
                status=TransactionStatus.VERIFIED,
                description=description,
                resolved_at=utcnow(),
                resolved_by=performed_by,
            )

        logger.info("Verified transaction %s for user %s: %+d points", transaction_id, row["user_id"], points)
        return Transaction(**row)

    def reject_transaction(
        self,
        transaction_id: UUID,
        reason: str,
        performed_by: Optional[str] = None,
    ) -> Transaction:
        row = self._get_row(transaction_id)

        with self.storage.locked(row["user_id"]):
            if row["status"] == TransactionStatus.REJECTED:
                return Transaction(**row)
            if not Transaction(**row).can_resolve():
                raise InvalidStateTransitionError(
                    f"Cannot reject transaction in {row['status'].value} state"
                )
            row.update(
                status=TransactionStatus.REJECTED,
                rejection_reason=reason,
                resolved_at=utcnow(),
                resolved_by=performed_by,
            )

        logger.info("Rejected transaction %s: %s", transaction_id, reason)
        return Transaction(**row)

    # ------------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------------

    def spend_points(
        self,
        spender_id: UUID,
        points: int,
        recipient_id: Optional[UUID] = None,
        type: TransactionType = TransactionType.POINT_SPEND,
        description: Optional[str] = None,
        billing_period: Optional[str] = None,
    ) -> TransferResult:
        """Debit ``points`` from the spender, crediting ``recipient_id`` when given.

        The balance check and both ledger rows happen under the locks of the
        spender and the recipient. Without a recipient the points go to the
        platform and no counter-entry is written.
        """
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise InvalidRequestError("Points to spend must be a positive whole number")
        if type not in SPEND_TYPES:
            raise InvalidRequestError(f"{type.value} is not a spend type")
        if recipient_id is not None and recipient_id == spender_id:
            raise InvalidRequestError("A user cannot transfer points to themselves")
        if type == TransactionType.BOOST and recipient_id is None:
            raise InvalidRequestError("A boost needs a recipient")

        with self.storage.locked(spender_id, recipient_id):
            wallet = self.derive_wallet(spender_id)
            if wallet.balance < points:
                logger.warning(
                    "Spend of %s points by %s refused: balance %s", points, spender_id, wallet.balance
                )
                raise InsufficientFundsError(points, wallet.balance)

            now = utcnow()
            debit = self._new_row(
                user_id=spender_id,
                type=type,
                points_delta=-points,
                status=TransactionStatus.VERIFIED,
                recipient_user_id=recipient_id,
                billing_period=billing_period,
                description=description or self._describe_spend(type, points, recipient_id),
                created_at=now,
                resolved_at=now,
            )
            credit = None
            if recipient_id is not None:
                credit = self._new_row(
                    user_id=recipient_id,
                    type=type,
                    points_delta=points,
                    status=TransactionStatus.VERIFIED,
                    counterparty_transaction_id=debit["id"],
                    description=f"Received {points} points from {spender_id}",
                    created_at=now,
                    resolved_at=now,
                )
                debit["counterparty_transaction_id"] = credit["id"]

            self.storage.insert(self.storage.transactions, debit)
            if credit is not None:
                self.storage.insert(self.storage.transactions, credit)

            result = TransferResult(
                debit=Transaction(**debit),
                credit=Transaction(**credit) if credit else None,
                spender_balance=wallet.balance - points,
            )

        logger.info(
            "User %s spent %s points (%s)%s",
            spender_id, points, type.value, f" to {recipient_id}" if recipient_id else "",
        )
        return result

    def boost(self, spender_id: UUID, recipient_id: UUID, points: int) -> TransferResult:
        return self.spend_points(spender_id, points, recipient_id=recipient_id, type=TransactionType.BOOST)

    def record_settlement(
        self,
        user_id: UUID,
        points: int,
        amount_in_currency: Decimal,
        payout_id: UUID,
    ) -> Transaction:
        """Consume ``points`` for a paid payout. Caller holds the user's lock."""
        now = utcnow()
        row = self._new_row(
            user_id=user_id,
            type=TransactionType.PAYOUT_SETTLEMENT,
            points_delta=-points,
            status=TransactionStatus.VERIFIED,
            amount_in_currency=money(amount_in_currency),
            payout_id=payout_id,
            description=f"Payout {payout_id} settled",
            created_at=now,
            resolved_at=now,
        )
        self.storage.insert(self.storage.transactions, row)
        return Transaction(**row)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        return Transaction(**self._get_row(transaction_id))

    def list_transactions(self, status: Optional[TransactionStatus] = None) -> list[Transaction]:
        rows = self.storage.snapshot(
            self.storage.transactions,
            (lambda r: r["status"] == status) if status else None,
        )
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Transaction(**r) for r in rows]

    def get_ledger_history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = [
            Transaction(**r) for r in self.storage.snapshot(
                self.storage.transactions, lambda r: r["user_id"] == user_id
            )
        ]
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]
        wallet = self.get_wallet(user_id)

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=wallet.balance,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_row(self, transaction_id: UUID) -> dict:
        row = self.storage.transactions.get(transaction_id)
        if not row:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return row

    @staticmethod
    def _new_row(**fields) -> dict:
        now = fields.pop("created_at", None) or utcnow()
        row = {
            "id": uuid4(),
            "amount_in_currency": None,
            "recipient_user_id": None,
            "counterparty_transaction_id": None,
            "bank_account_ref": None,
            "receipt_ref": None,
            "payout_id": None,
            "billing_period": None,
            "description": "",
            "rejection_reason": None,
            "resolved_by": None,
            "created_at": now,
            "resolved_at": None,
        }
        row.update(fields)
        return row

    @staticmethod
    def _describe_spend(type: TransactionType, points: int, recipient_id: Optional[UUID]) -> str:
        if type == TransactionType.BOOST:
            return f"Boost of {points} points to {recipient_id}"
        if type == TransactionType.STORAGE_CHARGE:
            return f"Storage charge of {points} points"
        if recipient_id is not None:
            return f"Spent {points} points with {recipient_id}"
        return f"Spent {points} points on platform features"
