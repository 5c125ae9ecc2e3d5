from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


class CalculationBase(str, Enum):
    DISCOUNTED_AMOUNT = "DISCOUNTED_AMOUNT"
    ORIGINAL_AMOUNT = "ORIGINAL_AMOUNT"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureReason(str, Enum):
    NO_DESTINATION = "NO_DESTINATION"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    # an attempt that never recorded its outcome, released for retry
    STALE_PROCESSING = "STALE_PROCESSING"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Collaborator data ────────────────────────────────────────────────────────

class PromoterAccount(BaseModel):
    id: str
    merchant_id: str
    name: str
    commission_rate: Decimal  # percentage, e.g. Decimal("10") for 10 %
    transfer_destination_id: Optional[str] = None  # e.g. Stripe Connect "acct_..."
    is_active: bool = True


class DiscountCode(BaseModel):
    id: str
    merchant_id: str
    code: str
    promoter_id: Optional[str] = None
    is_active: bool = True
    usage_limit: Optional[int] = None
    usage_count: int = 0
    expires_at: Optional[datetime] = None


class MerchantPayoutPolicy(BaseModel):
    merchant_id: str
    auto_payout: bool = False
    minimum_payout_amount: Decimal = Decimal("0.00")
    calculation_base: CalculationBase = CalculationBase.DISCOUNTED_AMOUNT


# ── Order events ─────────────────────────────────────────────────────────────

class AppliedDiscount(BaseModel):
    code: str
    discount_amount: Decimal


class OrderEvent(BaseModel):
    """A verified, parsed order-creation webhook."""

    merchant_id: str
    order_id: str
    original_amount: Decimal
    discount_codes: list[AppliedDiscount] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


# ── Ledger ───────────────────────────────────────────────────────────────────

class PayoutRecord(BaseModel):
    id: str
    merchant_id: str
    promoter_id: str
    order_id: str
    discount_code: str
    original_amount: Decimal
    discounted_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    calculation_base: CalculationBase
    status: PayoutStatus
    transfer_id: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    attempt_count: int = 0
    version: int = 1
    created_at: datetime
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        # stable across retries so the provider never creates two transfers
        return f"payout-{self.id}"


# ── Response models ──────────────────────────────────────────────────────────

class CommissionResult(BaseModel):
    commission_amount: Decimal
    base_amount: Decimal
    calculation_base: CalculationBase
    original_amount: Decimal
    discounted_amount: Decimal
    commission_rate: Decimal


class AutoPayoutDecision(BaseModel):
    promoter_id: str
    triggered: bool
    pending_total: Decimal
    pending_count: int = 0
    minimum_payout_amount: Decimal
    payout_ids: list[str] = Field(default_factory=list)


class OrderIntakeResult(BaseModel):
    order_id: str
    created: list[str] = Field(default_factory=list)
    duplicates: list[str] = Field(default_factory=list)
    skipped: int = 0
    # codes rejected for invalid amounts or unexpected errors
    rejected: list[str] = Field(default_factory=list)
    settled: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class SettlementResult(BaseModel):
    settled: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class BatchPayoutResult(BaseModel):
    mode: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class StatusTotals(BaseModel):
    count: int = 0
    amount: Decimal = Decimal("0.00")


class PayoutSummary(BaseModel):
    merchant_id: str
    total_payouts: int
    total_amount: Decimal
    pending: StatusTotals
    processing: StatusTotals
    completed: StatusTotals
    failed: StatusTotals


class PromoterPayoutStats(BaseModel):
    promoter_id: str
    name: Optional[str] = None
    payout_count: int = 0
    total_amount: Decimal = Decimal("0.00")
    completed_amount: Decimal = Decimal("0.00")
    pending_amount: Decimal = Decimal("0.00")


class MonthlyPayoutTrend(BaseModel):
    month: str  # YYYY-MM
    payout_count: int = 0
    total_amount: Decimal = Decimal("0.00")
    completed_amount: Decimal = Decimal("0.00")


class RatePayoutTotals(BaseModel):
    commission_rate: Decimal
    payout_count: int = 0
    total_amount: Decimal = Decimal("0.00")


class PayoutAnalytics(BaseModel):
    merchant_id: str
    period_days: int
    promoter_id: Optional[str] = None
    since: datetime
    total_payouts: int = 0
    total_amount: Decimal = Decimal("0.00")
    status_breakdown: dict[str, StatusTotals] = Field(default_factory=dict)
    top_promoters: list[PromoterPayoutStats] = Field(default_factory=list)
    monthly_trends: list[MonthlyPayoutTrend] = Field(default_factory=list)
    by_commission_rate: list[RatePayoutTotals] = Field(default_factory=list)
    recent_payouts: list[PayoutRecord] = Field(default_factory=list)
