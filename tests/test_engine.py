"""
Unit tests for the commission calculator and the auto-payout evaluator.
"""

from decimal import Decimal

import pytest

from app.engine import calculate_commission, evaluate_auto_payout
from app.errors import InvalidAmountError
from app.models import CalculationBase, MerchantPayoutPolicy, PayoutStatus

from conftest import setup_merchant


# ── fixtures ──────────────────────────────────────────────────────────────────

DISCOUNTED = CalculationBase.DISCOUNTED_AMOUNT
ORIGINAL = CalculationBase.ORIGINAL_AMOUNT


def add_pending(store, order_id, commission, promoter_id="P-001", merchant_id="M-001", code="SARAH10"):
    """Record a PENDING payout whose commission equals `commission` (10 % of 10x)."""
    amount = Decimal(commission) * 10
    result = calculate_commission(amount, amount, Decimal("10"), DISCOUNTED)
    return store.create_pending(
        merchant_id=merchant_id,
        promoter_id=promoter_id,
        order_id=order_id,
        discount_code=code,
        commission=result,
    )


def policy(auto=True, minimum="50.00"):
    return MerchantPayoutPolicy(
        merchant_id="M-001",
        auto_payout=auto,
        minimum_payout_amount=Decimal(minimum),
        calculation_base=DISCOUNTED,
    )


# ── commission ────────────────────────────────────────────────────────────────

class TestCommissionCalculator:
    def test_discounted_base(self):
        # $100 order, $80 paid, 10 % → $8.00
        result = calculate_commission(Decimal("100"), Decimal("80"), Decimal("10"), DISCOUNTED)
        assert result.commission_amount == Decimal("8.00")
        assert result.base_amount == Decimal("80.00")

    def test_original_base(self):
        result = calculate_commission(Decimal("100"), Decimal("80"), Decimal("10"), ORIGINAL)
        assert result.commission_amount == Decimal("10.00")
        assert result.calculation_base == ORIGINAL

    def test_result_is_rounded_to_cents(self):
        result = calculate_commission(Decimal("99.99"), Decimal("33.33"), Decimal("12.5"), DISCOUNTED)
        # 33.33 * 12.5 / 100 = 4.16625
        assert result.commission_amount == Decimal("4.17")
        assert result.commission_amount.as_tuple().exponent == -2

    def test_zero_rate_yields_zero_commission(self):
        result = calculate_commission(Decimal("100"), Decimal("80"), Decimal("0"), DISCOUNTED)
        assert result.commission_amount == Decimal("0.00")

    def test_full_discount_yields_zero_on_discounted_base(self):
        result = calculate_commission(Decimal("50"), Decimal("0"), Decimal("20"), DISCOUNTED)
        assert result.commission_amount == Decimal("0.00")

    def test_full_rate(self):
        result = calculate_commission(Decimal("40"), Decimal("25"), Decimal("100"), DISCOUNTED)
        assert result.commission_amount == Decimal("25.00")

    @pytest.mark.parametrize("original, discounted, rate", [
        ("100", "120", "10"),   # discounted above original
        ("0", "0", "10"),       # no order value
        ("-5", "0", "10"),
        ("100", "-1", "10"),
        ("100", "80", "-1"),
        ("100", "80", "100.01"),
        ("NaN", "80", "10"),
    ])
    def test_invalid_input_rejected(self, original, discounted, rate):
        with pytest.raises(InvalidAmountError):
            calculate_commission(Decimal(original), Decimal(discounted), Decimal(rate), DISCOUNTED)

    def test_unknown_base_rejected(self):
        with pytest.raises(InvalidAmountError, match="calculation base"):
            calculate_commission(Decimal("100"), Decimal("80"), Decimal("10"), "NET_AMOUNT")

    def test_invalid_amount_is_a_value_error(self):
        with pytest.raises(ValueError):
            calculate_commission(Decimal("100"), Decimal("200"), Decimal("10"), DISCOUNTED)


# ── auto-payout policy ────────────────────────────────────────────────────────

class TestAutoPayoutPolicy:
    def test_disabled_never_triggers(self, store):
        setup_merchant(store)
        for n in range(5):
            add_pending(store, f"O-{n}", "100.00")
        decision = evaluate_auto_payout(policy(auto=False, minimum="0"), "P-001", store)
        assert decision.triggered is False
        assert decision.payout_ids == []

    def test_below_minimum_does_not_trigger(self, store):
        setup_merchant(store)
        add_pending(store, "O-1", "45.00")
        decision = evaluate_auto_payout(policy(), "P-001", store)
        assert decision.triggered is False
        assert decision.pending_total == Decimal("45.00")
        assert decision.pending_count == 1

    def test_crossing_minimum_returns_all_pending(self, store):
        setup_merchant(store)
        first = add_pending(store, "O-1", "45.00")
        second = add_pending(store, "O-2", "8.00")
        decision = evaluate_auto_payout(policy(), "P-001", store)
        assert decision.triggered is True
        assert decision.pending_total == Decimal("53.00")
        assert set(decision.payout_ids) == {first.id, second.id}

    def test_exactly_minimum_triggers(self, store):
        setup_merchant(store)
        add_pending(store, "O-1", "50.00")
        assert evaluate_auto_payout(policy(), "P-001", store).triggered is True

    def test_only_pending_records_count(self, store):
        setup_merchant(store)
        done = add_pending(store, "O-1", "45.00")
        store.transition(done.id, PayoutStatus.PROCESSING)
        store.transition(done.id, PayoutStatus.COMPLETED, transfer_id="tr_1")
        add_pending(store, "O-2", "8.00")
        decision = evaluate_auto_payout(policy(), "P-001", store)
        assert decision.pending_total == Decimal("8.00")
        assert decision.triggered is False

    def test_other_promoters_not_counted(self, store):
        setup_merchant(store)
        setup_merchant(store, promoter_id="P-002", code="MIKE15")
        add_pending(store, "O-1", "45.00")
        add_pending(store, "O-2", "30.00", promoter_id="P-002", code="MIKE15")
        decision = evaluate_auto_payout(policy(), "P-001", store)
        assert decision.pending_total == Decimal("45.00")
        assert decision.triggered is False

    def test_evaluation_does_not_mutate(self, store):
        setup_merchant(store)
        record = add_pending(store, "O-1", "60.00")
        evaluate_auto_payout(policy(), "P-001", store)
        assert store.get_payout(record.id).status == PayoutStatus.PENDING

    def test_no_pending_does_not_trigger_with_zero_minimum(self, store):
        setup_merchant(store)
        decision = evaluate_auto_payout(policy(minimum="0"), "P-001", store)
        assert decision.triggered is False
