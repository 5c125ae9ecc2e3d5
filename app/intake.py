import logging
from decimal import Decimal

from app.attribution import resolve_attribution
from app.engine import calculate_commission
from app.errors import DuplicateEvent, InvalidAmountError, NoAttributionFound, PromoterNotFound
from app.models import AppliedDiscount, OrderEvent, OrderIntakeResult
from app.settlement import evaluate_and_settle
from app.store import DataStore
from app.transfers import TransferProvider

logger = logging.getLogger(__name__)


def _discounted_amount(event: OrderEvent, applied: AppliedDiscount) -> Decimal:
    # each code is judged against the order total minus its own reported discount
    discount = Decimal(str(applied.discount_amount))
    if discount < 0:
        raise InvalidAmountError(f"discount_amount must not be negative, got {discount}")
    return Decimal(str(event.original_amount)) - discount


def handle_order_created(
    event: OrderEvent,
    store: DataStore,
    provider: TransferProvider,
) -> OrderIntakeResult:
    """Attribute one verified order-creation event to promoters and record commission.

    Safe to call again with the same event: a (merchant, order, code) that
    already has a payout is reported under `duplicates` and left untouched.
    Each discount code is handled independently; a failure on one never
    stops the others.
    """
    result = OrderIntakeResult(order_id=event.order_id)
    policy = store.get_policy(event.merchant_id)
    promoters_to_evaluate: list[str] = []

    for applied in event.discount_codes:
        ctx = {"merchant_id": event.merchant_id, "order_id": event.order_id, "discount_code": applied.code}
        # a redelivery is a duplicate whatever has happened to the code or promoter since
        existing = store.find_payout(event.merchant_id, event.order_id, applied.code)
        if existing is not None:
            result.duplicates.append(existing.id)
            logger.info("duplicate_event", extra={**ctx, "promoter_id": existing.promoter_id, "payout_id": existing.id})
            continue

        try:
            promoter, _ = resolve_attribution(event.merchant_id, applied.code, store, at=event.created_at)
        except NoAttributionFound:
            result.skipped += 1
            logger.debug("code_not_attributed", extra=ctx)
            continue

        ctx["promoter_id"] = promoter.id
        try:
            commission = calculate_commission(
                original_amount=event.original_amount,
                discounted_amount=_discounted_amount(event, applied),
                commission_rate=promoter.commission_rate,
                calculation_base=policy.calculation_base,
            )
            record = store.create_pending(
                merchant_id=event.merchant_id,
                promoter_id=promoter.id,
                order_id=event.order_id,
                discount_code=applied.code,
                commission=commission,
            )
        except InvalidAmountError as e:
            result.rejected.append(applied.code)
            logger.warning("code_rejected", extra={**ctx, "reason": str(e)})
            continue
        except DuplicateEvent as e:
            # lost a race with a concurrent delivery of the same event
            result.duplicates.append(e.payout_id)
            logger.info("duplicate_event", extra={**ctx, "payout_id": e.payout_id})
            continue
        except Exception as e:
            result.rejected.append(applied.code)
            logger.exception("code_processing_error", extra={**ctx, "reason": str(e)})
            continue

        result.created.append(record.id)
        logger.info(
            "payout_created",
            extra={**ctx, "payout_id": record.id, "amount": str(record.commission_amount), "status": record.status.value},
        )
        if promoter.id not in promoters_to_evaluate:
            promoters_to_evaluate.append(promoter.id)

    for promoter_id in promoters_to_evaluate:
        try:
            settled = evaluate_and_settle(promoter_id, store, provider)
        except PromoterNotFound:
            logger.warning("promoter_missing", extra={"merchant_id": event.merchant_id, "promoter_id": promoter_id})
            continue
        except Exception as e:
            # payouts stay PENDING for the next scheduled or manual run
            logger.exception(
                "auto_payout_error",
                extra={"merchant_id": event.merchant_id, "order_id": event.order_id, "promoter_id": promoter_id, "reason": str(e)},
            )
            continue
        result.settled.extend(settled.settled)
        result.failed.extend(settled.failed)

    logger.info(
        "order_processed",
        extra={
            "merchant_id": event.merchant_id,
            "order_id": event.order_id,
            "reason": f"created={len(result.created)} duplicates={len(result.duplicates)} "
                      f"skipped={result.skipped} rejected={len(result.rejected)}",
        },
    )
    return result
