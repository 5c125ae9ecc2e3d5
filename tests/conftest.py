import os

# keep the app on an in-memory ledger and the mock provider during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TRANSFER_PROVIDER", "mock")
os.environ.setdefault("SEED_ON_STARTUP", "false")
os.environ.setdefault("LOG_JSON", "false")

from decimal import Decimal

import pytest

from app.errors import ProviderError
from app.models import CalculationBase, DiscountCode, MerchantPayoutPolicy, PromoterAccount
from app.store import DataStore

OK = "ok"
# the provider commits the transfer, then the response never arrives
TIMEOUT_AFTER_COMMIT = "timeout_after_commit"


class FakeTransferProvider:
    """Records every call and honours idempotency keys like a real provider."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls: list[dict] = []
        self.transfers: dict[str, str] = {}

    def transfer(self, destination_id, amount_minor_units, idempotency_key, *, description=None, metadata=None):
        self.calls.append({
            "destination_id": destination_id,
            "amount": amount_minor_units,
            "idempotency_key": idempotency_key,
            "metadata": metadata,
        })
        outcome = self.outcomes.pop(0) if self.outcomes else OK
        if isinstance(outcome, Exception):
            raise outcome
        if idempotency_key not in self.transfers:
            self.transfers[idempotency_key] = f"tr_{len(self.transfers) + 1:04d}"
        if outcome == TIMEOUT_AFTER_COMMIT:
            raise ProviderError("NETWORK_ERROR", "Request timed out", retryable=True)
        return self.transfers[idempotency_key]

    @property
    def amounts(self) -> list[int]:
        return [c["amount"] for c in self.calls]


def setup_merchant(
    store: DataStore,
    *,
    merchant_id="M-001",
    promoter_id="P-001",
    code="SARAH10",
    rate="10",
    destination="acct_sarah",
    auto_payout=False,
    minimum="50.00",
    base=CalculationBase.DISCOUNTED_AMOUNT,
):
    store.set_policy(MerchantPayoutPolicy(
        merchant_id=merchant_id,
        auto_payout=auto_payout,
        minimum_payout_amount=Decimal(minimum),
        calculation_base=base,
    ))
    store.add_promoter(PromoterAccount(
        id=promoter_id,
        merchant_id=merchant_id,
        name=f"Promoter {promoter_id}",
        commission_rate=Decimal(rate),
        transfer_destination_id=destination,
    ))
    store.add_discount_code(DiscountCode(
        id=f"DC-{promoter_id}-{code}",
        merchant_id=merchant_id,
        code=code,
        promoter_id=promoter_id,
    ))


@pytest.fixture
def store() -> DataStore:
    return DataStore.from_url("sqlite://")


@pytest.fixture
def provider() -> FakeTransferProvider:
    return FakeTransferProvider()
