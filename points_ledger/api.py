import logging
import secrets
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .billing import StorageBillingService
from .config import Settings, get_settings, setup_logging
from .errors import (
    BelowMinimumError,
    InsufficientFundsError,
    InvalidRequestError,
    InvalidStateTransitionError,
    LedgerServiceError,
    NotFoundError,
)
from .models import (
    BankAccount,
    CancelPayoutRequest,
    CompletePayoutRequest,
    CreateBankAccountRequest,
    CreateWithdrawalRequest,
    DowngradeStorageRequest,
    JobReport,
    JobReportResponse,
    LedgerHistoryResponse,
    Payout,
    PayoutActionRequest,
    PayoutStatus,
    PricingConfig,
    PricingConfigUpdate,
    PurchaseStorageRequest,
    RejectTransactionRequest,
    ResolveTransactionRequest,
    ScheduledJobRequest,
    SpendPointsRequest,
    StorageAccount,
    StoragePurchaseResult,
    StorageUsageRequest,
    TopUpRequest,
    Transaction,
    TransactionStatus,
    TransactionType,
    TransferResult,
    WalletBalance,
    Withdrawal,
    WithdrawalActionRequest,
    WithdrawalStatus,
)
from .payouts import PayoutService
from .service import LedgerService
from .storage import InMemoryStorage
from .withdrawals import WithdrawalService

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    InsufficientFundsError: status.HTTP_402_PAYMENT_REQUIRED,
    BelowMinimumError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidRequestError: status.HTTP_400_BAD_REQUEST,
}


class Services:
    """The ledger services sharing one store."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self.ledger = LedgerService(storage)
        self.billing = StorageBillingService(self.ledger)
        self.payouts = PayoutService(self.ledger)
        self.withdrawals = WithdrawalService(storage)


def _job_response(report: JobReport) -> JobReportResponse:
    return JobReportResponse(period=report.period, summary=report.summary, results=report.results)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_file)
    services = services or Services(InMemoryStorage(settings.initial_pricing()))

    app = FastAPI(
        title="Points Ledger API",
        description="Points ledger, creator payouts, storage billing and platform withdrawals",
        version="1.0.0",
        root_path=root_path,
        debug=settings.debug,
    )
    app.state.services = services
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        code = status.HTTP_400_BAD_REQUEST
        for error_type, error_code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                code = error_code
                break
        body = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, InsufficientFundsError):
            body.update(required=exc.required, available=exc.available)
        return JSONResponse(status_code=code, content=body)

    def require_cron_secret(
        x_cron_secret: Optional[str] = Header(default=None),
        authorization: Optional[str] = Header(default=None),
    ) -> None:
        if not settings.cron_secret:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET not configured")
        provided = x_cron_secret
        if provided is None and authorization and authorization.startswith("Bearer "):
            provided = authorization[len("Bearer "):]
        if not provided or not secrets.compare_digest(provided, settings.cron_secret):
            logger.warning("Rejected scheduled job call with a bad secret")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    ledger = services.ledger
    billing = services.billing
    payouts = services.payouts
    withdrawals = services.withdrawals

    # -- System ---------------------------------------------------------

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "points-ledger"}

    @app.get("/pricing", response_model=PricingConfig, tags=["Pricing"])
    def get_pricing() -> PricingConfig:
        return ledger.get_pricing()

    @app.put("/admin/pricing", response_model=PricingConfig, tags=["Pricing"])
    def update_pricing(request: PricingConfigUpdate) -> PricingConfig:
        return ledger.update_pricing(request)

    # -- Wallets and ledger ---------------------------------------------

    @app.get("/users/{user_id}/wallet", response_model=WalletBalance, tags=["Users"])
    def get_wallet(user_id: UUID) -> WalletBalance:
        return ledger.get_wallet(user_id)

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return ledger.get_ledger_history(user_id, limit, offset)

    @app.post(
        "/transactions/top-ups",
        response_model=Transaction,
        status_code=status.HTTP_201_CREATED,
        tags=["Transactions"],
    )
    def record_top_up(request: TopUpRequest) -> Transaction:
        return ledger.record_top_up(
            request.user_id, request.amount_in_currency, request.bank_account_ref, request.receipt_ref
        )

    @app.post("/transactions/spend", response_model=TransferResult, tags=["Transactions"])
    def spend_points(request: SpendPointsRequest) -> TransferResult:
        return ledger.spend_points(
            request.spender_id,
            request.points,
            recipient_id=request.recipient_id,
            type=TransactionType(request.type.value),
            description=request.description,
        )

    @app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
    def get_transaction(transaction_id: UUID) -> Transaction:
        return ledger.get_transaction(transaction_id)

    @app.post("/transactions/{transaction_id}/verify", response_model=Transaction, tags=["Transactions"])
    def verify_transaction(transaction_id: UUID, request: ResolveTransactionRequest) -> Transaction:
        return ledger.verify_transaction(transaction_id, request.performed_by)

    @app.post("/transactions/{transaction_id}/reject", response_model=Transaction, tags=["Transactions"])
    def reject_transaction(transaction_id: UUID, request: RejectTransactionRequest) -> Transaction:
        return ledger.reject_transaction(transaction_id, request.reason, request.performed_by)

    @app.get("/admin/transactions", response_model=list[Transaction], tags=["Transactions"])
    def list_transactions(
        status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    ) -> list[Transaction]:
        return ledger.list_transactions(status_filter)

    # -- Storage --------------------------------------------------------

    @app.get("/users/{user_id}/storage", response_model=StorageAccount, tags=["Storage"])
    def get_storage(user_id: UUID) -> StorageAccount:
        return billing.get_storage_account(user_id)

    @app.post("/storage/usage", response_model=StorageAccount, tags=["Storage"])
    def record_storage_usage(request: StorageUsageRequest) -> StorageAccount:
        return billing.record_storage_usage(request.user_id, request.total_used_bytes)

    @app.post("/storage/purchase", response_model=StoragePurchaseResult, tags=["Storage"])
    def purchase_storage(request: PurchaseStorageRequest) -> StoragePurchaseResult:
        return billing.purchase_storage(request.user_id, request.additional_gb)

    @app.post("/storage/downgrade", response_model=StorageAccount, tags=["Storage"])
    def downgrade_storage(request: DowngradeStorageRequest) -> StorageAccount:
        return billing.downgrade_storage(request.user_id, request.new_limit_gb)

    # -- Scheduled jobs -------------------------------------------------

    @app.post(
        "/jobs/payouts/generate",
        response_model=JobReportResponse,
        dependencies=[Depends(require_cron_secret)],
        tags=["Jobs"],
    )
    def generate_payouts(request: Optional[ScheduledJobRequest] = None) -> JobReportResponse:
        as_of = request.as_of if request else None
        return _job_response(payouts.generate_monthly_payouts(as_of))

    @app.post(
        "/jobs/storage/bill",
        response_model=JobReportResponse,
        dependencies=[Depends(require_cron_secret)],
        tags=["Jobs"],
    )
    def bill_storage(request: Optional[ScheduledJobRequest] = None) -> JobReportResponse:
        as_of = request.as_of if request else None
        return _job_response(billing.run_monthly_storage_billing(as_of))

    # -- Payouts --------------------------------------------------------

    @app.get("/payouts", response_model=list[Payout], tags=["Payouts"])
    def list_payouts(
        status_filter: Optional[PayoutStatus] = Query(default=None, alias="status"),
        user_id: Optional[UUID] = None,
        scheduled_for: Optional[str] = None,
    ) -> list[Payout]:
        return payouts.list_payouts(status_filter, user_id, scheduled_for)

    @app.get("/payouts/{payout_id}", response_model=Payout, tags=["Payouts"])
    def get_payout(payout_id: UUID) -> Payout:
        return payouts.get_payout(payout_id)

    @app.post("/payouts/{payout_id}/processing", response_model=Payout, tags=["Payouts"])
    def mark_payout_processing(payout_id: UUID, request: PayoutActionRequest) -> Payout:
        return payouts.mark_processing(payout_id, request.performed_by)

    @app.post("/payouts/{payout_id}/cancel", response_model=Payout, tags=["Payouts"])
    def cancel_payout(payout_id: UUID, request: CancelPayoutRequest) -> Payout:
        return payouts.cancel_payout(payout_id, request.reason, request.performed_by)

    @app.post("/payouts/{payout_id}/complete", response_model=Payout, tags=["Payouts"])
    def complete_payout(payout_id: UUID, request: CompletePayoutRequest) -> Payout:
        return payouts.complete_payout(payout_id, request.processed_by, request.settled_amount_in_currency)

    # -- Bank accounts and withdrawals ----------------------------------

    @app.get("/admin/bank-accounts", response_model=list[BankAccount], tags=["Withdrawals"])
    def list_bank_accounts(owner_scope: Optional[str] = None, active_only: bool = False) -> list[BankAccount]:
        return withdrawals.list_bank_accounts(owner_scope, active_only)

    @app.post(
        "/admin/bank-accounts",
        response_model=BankAccount,
        status_code=status.HTTP_201_CREATED,
        tags=["Withdrawals"],
    )
    def add_bank_account(request: CreateBankAccountRequest) -> BankAccount:
        return withdrawals.add_bank_account(
            request.account_name,
            request.bank_name,
            request.account_number,
            account_type=request.account_type,
            owner_scope=request.owner_scope,
        )

    @app.post("/admin/bank-accounts/{bank_account_id}/deactivate", response_model=BankAccount, tags=["Withdrawals"])
    def deactivate_bank_account(bank_account_id: UUID) -> BankAccount:
        return withdrawals.deactivate_bank_account(bank_account_id)

    @app.get("/admin/withdrawals", response_model=list[Withdrawal], tags=["Withdrawals"])
    def list_withdrawals(
        status_filter: Optional[WithdrawalStatus] = Query(default=None, alias="status"),
    ) -> list[Withdrawal]:
        return withdrawals.list_withdrawals(status_filter)

    @app.post(
        "/admin/withdrawals",
        response_model=Withdrawal,
        status_code=status.HTTP_201_CREATED,
        tags=["Withdrawals"],
    )
    def request_withdrawal(request: CreateWithdrawalRequest) -> Withdrawal:
        return withdrawals.request_withdrawal(
            request.bank_account_ref, request.amount_in_currency, request.requested_by, request.notes
        )

    @app.get("/admin/withdrawals/{withdrawal_id}", response_model=Withdrawal, tags=["Withdrawals"])
    def get_withdrawal(withdrawal_id: UUID) -> Withdrawal:
        return withdrawals.get_withdrawal(withdrawal_id)

    @app.post("/admin/withdrawals/{withdrawal_id}/processing", response_model=Withdrawal, tags=["Withdrawals"])
    def mark_withdrawal_processing(withdrawal_id: UUID, request: WithdrawalActionRequest) -> Withdrawal:
        return withdrawals.mark_processing(withdrawal_id, request.processed_by, request.notes)

    @app.post("/admin/withdrawals/{withdrawal_id}/complete", response_model=Withdrawal, tags=["Withdrawals"])
    def complete_withdrawal(withdrawal_id: UUID, request: WithdrawalActionRequest) -> Withdrawal:
        return withdrawals.complete_withdrawal(withdrawal_id, request.processed_by, request.notes)

    @app.post("/admin/withdrawals/{withdrawal_id}/cancel", response_model=Withdrawal, tags=["Withdrawals"])
    def cancel_withdrawal(withdrawal_id: UUID, request: WithdrawalActionRequest) -> Withdrawal:
        return withdrawals.cancel_withdrawal(withdrawal_id, request.processed_by, request.notes)

    @app.post("/admin/withdrawals/{withdrawal_id}/fail", response_model=Withdrawal, tags=["Withdrawals"])
    def fail_withdrawal(withdrawal_id: UUID, request: WithdrawalActionRequest) -> Withdrawal:
        return withdrawals.fail_withdrawal(withdrawal_id, request.processed_by, request.notes)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
