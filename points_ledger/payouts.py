import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import InvalidRequestError, InvalidStateTransitionError, NotFoundError
from .models import (
    JobOutcome,
    JobReport,
    JobResult,
    Payout,
    PayoutStatus,
    money,
    period_key,
)
from .service import LedgerService, utcnow

logger = logging.getLogger(__name__)


class PayoutService:
    """Monthly payout generation and the administrative payout workflow.

    Lifecycle: pending -> processing -> paid, or pending|processing -> cancelled.
    While a payout is pending or processing its points are excluded from the
    owner's spendable balance; paying it writes a settlement row that consumes
    them, cancelling it simply releases them.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    # ------------------------------------------------------------------
    # Generator
    # ------------------------------------------------------------------

    def generate_monthly_payouts(self, as_of: Optional[datetime] = None) -> JobReport:
        period = period_key(as_of or utcnow())
        report = JobReport(period=period)

        for user_id in self.storage.known_user_ids():
            report.results.append(self._generate_for_user(user_id, period))

        logger.info("Payout generation for %s finished: %s", period, report.summary)
        return report

    def _generate_for_user(self, user_id: UUID, period: str) -> JobResult:
        key = (user_id, period)

        with self.storage.locked(user_id):
            existing = self.storage.payout_index.get(key)
            if existing is not None:
                return JobResult(
                    user_id=user_id,
                    outcome=JobOutcome.DUPLICATE_PERIOD,
                    payout_id=existing,
                    reason="existing_payout",
                )

            wallet = self.ledger.derive_wallet(user_id)
            points = min(wallet.balance, wallet.earned_points)
            if points <= 0:
                return JobResult(user_id=user_id, outcome=JobOutcome.SKIPPED, reason="no_earned_points")

            pricing = self.ledger.get_pricing()
            amount = pricing.payout_amount(points)
            if amount < pricing.payout_minimum_amount:
                return JobResult(
                    user_id=user_id,
                    outcome=JobOutcome.SKIPPED,
                    points=points,
                    reason="below_payout_minimum",
                )

            row = {
                "id": uuid4(),
                "user_id": user_id,
                "gross_points": points,
                "locked_points": points,
                "amount_in_currency": amount,
                "status": PayoutStatus.PENDING,
                "scheduled_for": period,
                "created_at": utcnow(),
                "processed_at": None,
                "processed_by": None,
                "cancellation_reason": None,
                "settlement_transaction_id": None,
                "notes": f"Automated payout generated for {period}",
            }
            self.storage.insert(self.storage.payouts, row)
            self.storage.claim_period(self.storage.payout_index, key, row["id"])

        logger.info("Locked %s points for user %s in payout %s (%s)", points, user_id, row["id"], amount)
        return JobResult(user_id=user_id, outcome=JobOutcome.CREATED, payout_id=row["id"], points=points)

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def mark_processing(self, payout_id: UUID, performed_by: Optional[str] = None) -> Payout:
        row = self._get_row(payout_id)

        with self.storage.locked(row["user_id"]):
            payout = Payout(**row)
            if not payout.can_process():
                raise InvalidStateTransitionError(
                    f"Cannot start processing payout in {payout.status.value} state"
                )
            row["status"] = PayoutStatus.PROCESSING

        logger.info("Payout %s marked processing by %s", payout_id, performed_by or "unknown")
        return Payout(**row)

    def cancel_payout(self, payout_id: UUID, reason: str, performed_by: Optional[str] = None) -> Payout:
        if not reason or not reason.strip():
            raise InvalidRequestError("A cancellation reason is required")

        row = self._get_row(payout_id)

        with self.storage.locked(row["user_id"]):
            payout = Payout(**row)
            if not payout.can_cancel():
                raise InvalidStateTransitionError(
                    f"Cannot cancel payout in {payout.status.value} state"
                )
            row.update(
                status=PayoutStatus.CANCELLED,
                cancellation_reason=reason,
                processed_at=utcnow(),
                processed_by=performed_by,
            )

        logger.info("Payout %s cancelled, %s points released: %s", payout_id, row["locked_points"], reason)
        return Payout(**row)

    def complete_payout(
        self,
        payout_id: UUID,
        processed_by: str,
        settled_amount_in_currency: Decimal,
    ) -> Payout:
        settled = money(settled_amount_in_currency)
        if settled < 0:
            raise InvalidRequestError("Settled amount cannot be negative")

        row = self._get_row(payout_id)

        with self.storage.locked(row["user_id"]):
            payout = Payout(**row)
            if not payout.can_complete():
                raise InvalidStateTransitionError(
                    f"Cannot complete payout in {payout.status.value} state"
                )

            settlement = self.ledger.record_settlement(
                row["user_id"], row["locked_points"], settled, payout_id
            )
            row.update(
                status=PayoutStatus.PAID,
                amount_in_currency=settled,
                processed_at=utcnow(),
                processed_by=processed_by,
                settlement_transaction_id=settlement.id,
            )

        logger.info("Payout %s paid by %s: %s", payout_id, processed_by, settled)
        return Payout(**row)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_payout(self, payout_id: UUID) -> Payout:
        return Payout(**self._get_row(payout_id))

    def list_payouts(
        self,
        status: Optional[PayoutStatus] = None,
        user_id: Optional[UUID] = None,
        scheduled_for: Optional[str] = None,
    ) -> list[Payout]:
        def matches(row: dict) -> bool:
            if status is not None and row["status"] != status:
                return False
            if user_id is not None and row["user_id"] != user_id:
                return False
            if scheduled_for is not None and row["scheduled_for"] != scheduled_for:
                return False
            return True

        rows = self.storage.snapshot(self.storage.payouts, matches)
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [Payout(**r) for r in rows]

    def _get_row(self, payout_id: UUID) -> dict:
        row = self.storage.payouts.get(payout_id)
        if not row:
            raise NotFoundError(f"Payout {payout_id} not found")
        return row
