"""
Unit Tests for storage billing

Tests cover:
1. Recurring cost calculation
2. Storage purchases and downgrades
3. Monthly billing and its idempotency
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from points_ledger.billing import monthly_cost_points
from points_ledger.errors import InsufficientFundsError, InvalidRequestError
from points_ledger.models import BYTES_PER_GB, JobOutcome, TransactionType

from .conftest import CREATOR_ID, SUPPORTER_ID

NOVEMBER = datetime(2025, 11, 1, 3, 0, tzinfo=timezone.utc)
DECEMBER = datetime(2025, 12, 1, 3, 0, tzinfo=timezone.utc)


def _storage_charges(services, user_id):
    return [
        t for t in services.ledger.get_ledger_history(user_id).entries
        if t.type == TransactionType.STORAGE_CHARGE
    ]


class TestMonthlyCost:
    """The first GB of the limit is free, every started GB beyond it is billed."""

    @pytest.mark.parametrize("limit_bytes, expected", [
        (0, 0),
        (BYTES_PER_GB, 0),
        (BYTES_PER_GB + 1, 4),
        (2 * BYTES_PER_GB, 4),
        (10 * BYTES_PER_GB, 36),
        (11 * BYTES_PER_GB, 40),
    ])
    def test_monthly_cost(self, limit_bytes, expected):
        assert monthly_cost_points(limit_bytes, 4) == expected


class TestPurchaseStorage:
    """Tests for one-time storage purchases."""

    def test_purchase_debits_and_raises_limit(self, services, fund):
        fund(SUPPORTER_ID, 100)

        result = services.billing.purchase_storage(SUPPORTER_ID, 10)

        assert result.points_deducted == 100
        assert result.transaction.points_delta == -100
        assert result.account.limit_bytes == 10 * BYTES_PER_GB
        assert result.account.monthly_cost_points == 9 * 4
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 0

    def test_purchase_adds_to_existing_limit(self, services, fund):
        fund(SUPPORTER_ID, 50)
        services.billing.purchase_storage(SUPPORTER_ID, 2)

        result = services.billing.purchase_storage(SUPPORTER_ID, 3)

        assert result.account.limit_gb == 5
        assert result.account.monthly_cost_points == 16

    def test_insufficient_funds_leaves_limit_unchanged(self, services, fund):
        fund(SUPPORTER_ID, 99)
        before = len(services.ledger.list_transactions())

        with pytest.raises(InsufficientFundsError):
            services.billing.purchase_storage(SUPPORTER_ID, 10)

        account = services.billing.get_storage_account(SUPPORTER_ID)
        assert account.limit_bytes == 0
        assert account.monthly_cost_points == 0
        assert len(services.ledger.list_transactions()) == before
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 99

    @pytest.mark.parametrize("additional_gb", [0, -1])
    def test_invalid_amount_rejected(self, services, additional_gb):
        with pytest.raises(InvalidRequestError):
            services.billing.purchase_storage(SUPPORTER_ID, additional_gb)


class TestDowngradeStorage:
    """Tests for reducing the storage limit."""

    def test_downgrade_below_usage_fails(self, services, fund):
        fund(SUPPORTER_ID, 100)
        services.billing.purchase_storage(SUPPORTER_ID, 10)
        services.billing.record_storage_usage(SUPPORTER_ID, 5 * BYTES_PER_GB + 1)

        with pytest.raises(InvalidRequestError):
            services.billing.downgrade_storage(SUPPORTER_ID, 5)

        account = services.billing.get_storage_account(SUPPORTER_ID)
        assert account.limit_bytes == 10 * BYTES_PER_GB
        assert account.monthly_cost_points == 36

    def test_downgrade_must_decrease(self, services, fund):
        fund(SUPPORTER_ID, 40)
        services.billing.purchase_storage(SUPPORTER_ID, 4)

        with pytest.raises(InvalidRequestError):
            services.billing.downgrade_storage(SUPPORTER_ID, 4)

    def test_downgrade_recomputes_cost_without_refund(self, services, fund):
        fund(SUPPORTER_ID, 100)
        services.billing.purchase_storage(SUPPORTER_ID, 10)
        services.billing.record_storage_usage(SUPPORTER_ID, 3 * BYTES_PER_GB)

        account = services.billing.downgrade_storage(SUPPORTER_ID, 3)

        assert account.limit_bytes == 3 * BYTES_PER_GB
        assert account.monthly_cost_points == 8
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 0

    def test_usage_report_does_not_change_limit(self, services):
        account = services.billing.record_storage_usage(SUPPORTER_ID, 2 * BYTES_PER_GB)

        assert account.total_used_bytes == 2 * BYTES_PER_GB
        assert account.limit_bytes == 0
        assert account.monthly_cost_points == 0


class TestMonthlyStorageBilling:
    """Tests for the recurring storage charge."""

    def test_charges_once_per_period(self, services, fund):
        fund(SUPPORTER_ID, 200)
        services.billing.purchase_storage(SUPPORTER_ID, 10)

        first = services.billing.run_monthly_storage_billing(NOVEMBER)
        second = services.billing.run_monthly_storage_billing(datetime(2025, 11, 2, tzinfo=timezone.utc))

        assert first.outcome_for(SUPPORTER_ID).outcome == JobOutcome.CHARGED
        assert first.outcome_for(SUPPORTER_ID).points == 36
        assert second.outcome_for(SUPPORTER_ID).outcome == JobOutcome.DUPLICATE_PERIOD

        charges = _storage_charges(services, SUPPORTER_ID)
        assert len(charges) == 1
        assert charges[0].billing_period == "2025-11"
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 200 - 100 - 36

        account = services.billing.get_storage_account(SUPPORTER_ID)
        assert account.last_billed_period == "2025-11"

    def test_next_period_charges_again(self, services, fund):
        fund(SUPPORTER_ID, 200)
        services.billing.purchase_storage(SUPPORTER_ID, 2)

        services.billing.run_monthly_storage_billing(NOVEMBER)
        services.billing.run_monthly_storage_billing(DECEMBER)

        assert len(_storage_charges(services, SUPPORTER_ID)) == 2

    def test_insufficient_funds_flags_account(self, services, fund):
        fund(SUPPORTER_ID, 100)
        services.billing.purchase_storage(SUPPORTER_ID, 10)

        report = services.billing.run_monthly_storage_billing(NOVEMBER)

        result = report.outcome_for(SUPPORTER_ID)
        assert result.outcome == JobOutcome.INSUFFICIENT_FUNDS
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 0
        assert _storage_charges(services, SUPPORTER_ID) == []
        flagged = services.billing.list_flagged_accounts("2025-11")
        assert [a.user_id for a in flagged] == [SUPPORTER_ID]

    def test_flagged_account_is_charged_after_funding(self, services, fund):
        fund(SUPPORTER_ID, 100)
        services.billing.purchase_storage(SUPPORTER_ID, 10)
        services.billing.run_monthly_storage_billing(NOVEMBER)

        fund(SUPPORTER_ID, 50)
        report = services.billing.run_monthly_storage_billing(NOVEMBER)

        assert report.outcome_for(SUPPORTER_ID).outcome == JobOutcome.CHARGED
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 14
        assert services.billing.list_flagged_accounts("2025-11") == []

    def test_accounts_without_cost_are_ignored(self, services, fund):
        fund(SUPPORTER_ID, 10)
        services.billing.purchase_storage(SUPPORTER_ID, 1)
        services.billing.record_storage_usage(CREATOR_ID, BYTES_PER_GB // 2)

        report = services.billing.run_monthly_storage_billing(NOVEMBER)

        assert report.results == []
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 0

    def test_concurrent_runs_charge_once(self, services, fund):
        """A double-fired scheduler writes one charge for the month."""
        fund(SUPPORTER_ID, 200)
        services.billing.purchase_storage(SUPPORTER_ID, 10)

        with ThreadPoolExecutor(max_workers=8) as pool:
            reports = list(pool.map(lambda _: services.billing.run_monthly_storage_billing(NOVEMBER), range(8)))

        outcomes = [r.outcome_for(SUPPORTER_ID).outcome for r in reports]
        assert outcomes.count(JobOutcome.CHARGED) == 1
        assert outcomes.count(JobOutcome.DUPLICATE_PERIOD) == 7
        assert len(_storage_charges(services, SUPPORTER_ID)) == 1
        assert services.ledger.get_wallet(SUPPORTER_ID).balance == 200 - 100 - 36
