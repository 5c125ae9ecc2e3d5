from decimal import Decimal, InvalidOperation

from app.currency import round2
from app.errors import InvalidAmountError
from app.models import (
    AutoPayoutDecision,
    CalculationBase,
    CommissionResult,
    MerchantPayoutPolicy,
)
from app.store import DataStore

_ZERO = Decimal("0.00")
_HUNDRED = Decimal("100")


def _as_decimal(value, name: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"{name} is not a number: {value!r}") from None
    if not d.is_finite():
        raise InvalidAmountError(f"{name} must be finite, got {value!r}")
    return d


def calculate_commission(
    original_amount: Decimal,
    discounted_amount: Decimal,
    commission_rate: Decimal,
    calculation_base: CalculationBase,
) -> CommissionResult:
    """commission = round2(base * rate / 100), base chosen by the merchant policy.

    `commission_rate` is a percentage in [0, 100]. A zero rate is valid and
    yields a zero commission; the caller still records it for audit.
    """
    original = _as_decimal(original_amount, "original_amount")
    discounted = _as_decimal(discounted_amount, "discounted_amount")
    rate = _as_decimal(commission_rate, "commission_rate")

    if original <= 0:
        raise InvalidAmountError(f"original_amount must be positive, got {original}")
    if discounted < 0:
        raise InvalidAmountError(f"discounted_amount must not be negative, got {discounted}")
    if discounted > original:
        raise InvalidAmountError(
            f"discounted_amount {discounted} exceeds original_amount {original}"
        )
    if not (0 <= rate <= 100):
        raise InvalidAmountError(f"commission_rate must be within 0-100, got {rate}")
    try:
        base = CalculationBase(calculation_base)
    except ValueError:
        raise InvalidAmountError(f"Unknown calculation base: {calculation_base!r}") from None

    base_amount = discounted if base == CalculationBase.DISCOUNTED_AMOUNT else original
    commission = round2(base_amount * rate / _HUNDRED)

    return CommissionResult(
        commission_amount=commission,
        base_amount=round2(base_amount),
        calculation_base=base,
        original_amount=round2(original),
        discounted_amount=round2(discounted),
        commission_rate=rate,
    )


def evaluate_auto_payout(
    policy: MerchantPayoutPolicy,
    promoter_id: str,
    store: DataStore,
) -> AutoPayoutDecision:
    """Decide whether a promoter's pending commission should be settled now.

    Read-only: sums the promoter's PENDING payouts and compares the total to
    the merchant's minimum. Never triggers while auto-payout is disabled.
    """
    minimum = round2(policy.minimum_payout_amount)

    if not policy.auto_payout:
        return AutoPayoutDecision(
            promoter_id=promoter_id,
            triggered=False,
            pending_total=_ZERO,
            minimum_payout_amount=minimum,
        )

    pending = store.pending_for_promoter(policy.merchant_id, promoter_id)
    total = sum((p.commission_amount for p in pending), _ZERO).quantize(Decimal("0.01"))
    triggered = bool(pending) and total >= minimum

    return AutoPayoutDecision(
        promoter_id=promoter_id,
        triggered=triggered,
        pending_total=total,
        pending_count=len(pending),
        minimum_payout_amount=minimum,
        payout_ids=[p.id for p in pending] if triggered else [],
    )
