from decimal import Decimal
from uuid import UUID

import pytest

from points_ledger.api import Services
from points_ledger.models import PricingConfig
from points_ledger.storage import InMemoryStorage


SUPPORTER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
CREATOR_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
OTHER_ID = UUID("770e8400-e29b-41d4-a716-446655440002")


def default_pricing() -> PricingConfig:
    return PricingConfig(
        point_buy_price=Decimal("0.80"),
        point_user_value=Decimal("1.00"),
        storage_purchase_price_per_gb=10,
        storage_monthly_cost_per_gb=4,
        mandatory_top_up_minimum=Decimal("0"),
    )


@pytest.fixture
def services() -> Services:
    return Services(InMemoryStorage(default_pricing()))


@pytest.fixture
def bank_account(services):
    return services.withdrawals.add_bank_account(
        account_name="Platform Operating",
        bank_name="First Citizens",
        account_number="100200300",
    )


@pytest.fixture
def fund(services, bank_account):
    """Top up and verify ``amount`` for a user, returning the verified transaction."""

    def _fund(user_id: UUID, amount):
        txn = services.ledger.record_top_up(user_id, Decimal(str(amount)), bank_account.id, "receipt.png")
        return services.ledger.verify_transaction(txn.id, performed_by="admin@test.com")

    return _fund
