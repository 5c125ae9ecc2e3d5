"""
End-to-end tests for order-event intake: attribution, idempotent recording
and the auto-payout hand-off.
"""

from datetime import datetime, timezone
from decimal import Decimal

from app.engine import calculate_commission
from app.intake import handle_order_created
from app.models import (
    AppliedDiscount,
    CalculationBase,
    DiscountCode,
    FailureReason,
    OrderEvent,
    PayoutStatus,
)

from conftest import TIMEOUT_AFTER_COMMIT, FakeTransferProvider, setup_merchant


def order(order_id="O-1", original="100.00", codes=(("SARAH10", "20.00"),), merchant_id="M-001", created_at=None):
    kwargs = {}
    if created_at is not None:
        kwargs["created_at"] = created_at
    return OrderEvent(
        merchant_id=merchant_id,
        order_id=order_id,
        original_amount=Decimal(original),
        discount_codes=[AppliedDiscount(code=c, discount_amount=Decimal(a)) for c, a in codes],
        **kwargs,
    )


class TestScenarios:
    def test_discounted_order_creates_one_pending_record(self, store, provider):
        setup_merchant(store, rate="10", base=CalculationBase.DISCOUNTED_AMOUNT)
        result = handle_order_created(order(), store, provider)

        assert len(result.created) == 1
        assert result.duplicates == [] and result.skipped == 0
        record = store.get_payout(result.created[0])
        assert record.commission_amount == Decimal("8.00")
        assert record.discounted_amount == Decimal("80.00")
        assert record.status == PayoutStatus.PENDING
        assert record.discount_code == "SARAH10"

    def test_redelivery_reports_duplicate(self, store, provider):
        setup_merchant(store)
        first = handle_order_created(order(), store, provider)
        second = handle_order_created(order(), store, provider)

        assert second.created == []
        assert second.duplicates == first.created
        assert len(store.list_payouts("M-001")) == 1

    def test_crossing_threshold_settles_both_records(self, store, provider):
        setup_merchant(store, auto_payout=True, minimum="50.00")
        # $45 pending: 10 % of $450
        earlier = handle_order_created(order("O-0", "500.00", (("SARAH10", "50.00"),)), store, provider)
        assert earlier.settled == []

        result = handle_order_created(order("O-1"), store, provider)

        assert sorted(result.settled) == sorted(earlier.created + result.created)
        assert sum(provider.amounts) == 5300
        for payout_id in result.settled:
            assert store.get_payout(payout_id).status == PayoutStatus.COMPLETED

    def test_no_destination_marks_records_failed(self, store, provider):
        setup_merchant(store, auto_payout=True, minimum="5.00", destination=None)
        result = handle_order_created(order(), store, provider)
        assert result.failed == result.created
        record = store.get_payout(result.created[0])
        assert record.status == PayoutStatus.FAILED
        assert record.failure_reason == FailureReason.NO_DESTINATION

    def test_storefront_code_is_skipped(self, store, provider):
        setup_merchant(store)
        store.add_discount_code(DiscountCode(id="DC-W", merchant_id="M-001", code="WELCOME10"))
        result = handle_order_created(order(codes=(("WELCOME10", "10.00"),)), store, provider)
        assert result.skipped == 1
        assert result.created == []
        assert store.list_payouts("M-001") == []

    def test_timeout_then_retry_completes_without_duplicate_transfer(self, store):
        from app.settlement import retry_failed

        setup_merchant(store, auto_payout=True, minimum="1.00")
        provider = FakeTransferProvider(outcomes=[TIMEOUT_AFTER_COMMIT])
        result = handle_order_created(order(), store, provider)
        payout_id = result.created[0]
        assert result.failed == [payout_id]
        assert store.get_payout(payout_id).failure_reason == FailureReason.PROVIDER_ERROR

        assert retry_failed(payout_id, store, provider) == PayoutStatus.COMPLETED
        assert len(provider.transfers) == 1
        assert {c["idempotency_key"] for c in provider.calls} == {f"payout-{payout_id}"}


class TestIntakeEdgeCases:
    def test_order_without_codes(self, store, provider):
        setup_merchant(store)
        result = handle_order_created(order(codes=()), store, provider)
        assert result.created == [] and result.skipped == 0

    def test_codes_are_independent(self, store, provider):
        setup_merchant(store)
        setup_merchant(store, promoter_id="P-002", code="MIKE15", rate="15")
        result = handle_order_created(
            order(codes=(("SARAH10", "20.00"), ("BOGUS", "5.00"), ("MIKE15", "10.00"))),
            store,
            provider,
        )
        assert len(result.created) == 2
        assert result.skipped == 1
        amounts = sorted(store.get_payout(p).commission_amount for p in result.created)
        # 10 % of 80, 15 % of 90
        assert amounts == [Decimal("8.00"), Decimal("13.50")]

    def test_invalid_amount_rejects_only_that_code(self, store, provider):
        setup_merchant(store)
        setup_merchant(store, promoter_id="P-002", code="MIKE15")
        result = handle_order_created(
            order(codes=(("SARAH10", "150.00"), ("MIKE15", "10.00"))),
            store,
            provider,
        )
        assert result.rejected == ["SARAH10"]
        assert len(result.created) == 1

    def test_negative_discount_rejected(self, store, provider):
        setup_merchant(store)
        result = handle_order_created(order(codes=(("SARAH10", "-5.00"),)), store, provider)
        assert result.rejected == ["SARAH10"]
        assert result.created == []

    def test_zero_rate_promoter_still_recorded(self, store, provider):
        setup_merchant(store, rate="0")
        result = handle_order_created(order(), store, provider)
        assert len(result.created) == 1
        assert store.get_payout(result.created[0]).commission_amount == Decimal("0.00")

    def test_original_amount_base(self, store, provider):
        setup_merchant(store, base=CalculationBase.ORIGINAL_AMOUNT)
        result = handle_order_created(order(), store, provider)
        record = store.get_payout(result.created[0])
        assert record.commission_amount == Decimal("10.00")
        assert record.calculation_base == CalculationBase.ORIGINAL_AMOUNT

    def test_expired_code_at_order_time_is_skipped(self, store, provider):
        setup_merchant(store)
        store.add_discount_code(DiscountCode(
            id="DC-P-001-SARAH10", merchant_id="M-001", code="SARAH10", promoter_id="P-001",
            expires_at=datetime(2026, 1, 5, tzinfo=timezone.utc),
        ))
        result = handle_order_created(
            order(created_at=datetime(2026, 1, 6, tzinfo=timezone.utc)), store, provider,
        )
        assert result.skipped == 1

    def test_duplicate_does_not_reevaluate_auto_payout(self, store, provider):
        setup_merchant(store, auto_payout=True, minimum="5.00", destination=None)
        handle_order_created(order(), store, provider)
        again = handle_order_created(order(), store, provider)
        assert again.failed == [] and again.settled == []
        record = store.get_payout(again.duplicates[0])
        assert record.attempt_count == 1

    def test_redelivery_after_code_deactivated_is_duplicate(self, store, provider):
        setup_merchant(store)
        first = handle_order_created(order(), store, provider)
        store.add_discount_code(DiscountCode(
            id="DC-P-001-SARAH10", merchant_id="M-001", code="SARAH10", promoter_id="P-001", is_active=False,
        ))

        again = handle_order_created(order(), store, provider)

        assert again.duplicates == first.created
        assert again.skipped == 0 and again.rejected == []

    def test_redelivery_after_code_expired_is_duplicate(self, store, provider):
        setup_merchant(store)
        first = handle_order_created(order(), store, provider)
        store.add_discount_code(DiscountCode(
            id="DC-P-001-SARAH10", merchant_id="M-001", code="SARAH10", promoter_id="P-001",
            expires_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ))
        # no created_at on the redelivered event: it defaults to now, after expiry
        again = handle_order_created(order(), store, provider)

        assert again.duplicates == first.created
        assert again.skipped == 0

    def test_concurrent_delivery_caught_by_unique_key(self, store, provider, monkeypatch):
        setup_merchant(store)
        first = handle_order_created(order(), store, provider)
        real_find = store.find_payout
        lookups = []

        def racing_find(*args):
            # the other delivery commits between our lookup and our insert
            lookups.append(args)
            return None if len(lookups) == 1 else real_find(*args)

        monkeypatch.setattr(store, "find_payout", racing_find)

        again = handle_order_created(order(), store, provider)

        assert again.created == []
        assert again.duplicates == first.created

    def test_ledger_error_on_one_code_does_not_stop_others(self, store, provider, monkeypatch):
        setup_merchant(store)
        setup_merchant(store, promoter_id="P-002", code="MIKE15")
        real_create = store.create_pending

        def flaky_create(**kwargs):
            if kwargs["discount_code"] == "SARAH10":
                raise RuntimeError("connection reset")
            return real_create(**kwargs)

        monkeypatch.setattr(store, "create_pending", flaky_create)
        result = handle_order_created(
            order(codes=(("SARAH10", "20.00"), ("MIKE15", "10.00"))), store, provider,
        )
        assert result.rejected == ["SARAH10"]
        assert len(result.created) == 1

    def test_amounts_match_calculator(self, store, provider):
        setup_merchant(store, rate="12.5")
        result = handle_order_created(order(original="59.99", codes=(("SARAH10", "6.00"),)), store, provider)
        expected = calculate_commission(
            Decimal("59.99"), Decimal("53.99"), Decimal("12.5"), CalculationBase.DISCOUNTED_AMOUNT,
        )
        assert store.get_payout(result.created[0]).commission_amount == expected.commission_amount
