"""
Settlement: moving pending commission to promoters through the transfer provider.

Every payout follows PENDING -> PROCESSING -> COMPLETED | FAILED. A FAILED
payout is only re-attempted through an explicit retry (operator or scheduled
run); the retry reuses the payout's idempotency key, so a transfer that
actually went through before a timeout is returned rather than duplicated.
A payout stuck in PROCESSING past STALE_PROCESSING_SECONDS (its outcome was
never written) is released to FAILED by the same retry and attempted again.
"""
import logging
from datetime import timedelta
from typing import Iterable, Optional

from app.config import settings
from app.currency import to_minor_units
from app.engine import evaluate_auto_payout
from app.errors import (InvalidTransition, LedgerWriteConflict, NoDestination, PayoutInFlight, PayoutNotFound,
                        PromoterNotFound, ProviderError)
from app.models import (
    BatchPayoutResult,
    FailureReason,
    PayoutRecord,
    PayoutStatus,
    PromoterAccount,
    SettlementResult,
    utcnow,
)
from app.store import DataStore
from app.transfers import TransferProvider

logger = logging.getLogger(__name__)


def _context(record: PayoutRecord) -> dict:
    return {
        "merchant_id": record.merchant_id,
        "order_id": record.order_id,
        "promoter_id": record.promoter_id,
        "payout_id": record.id,
        "discount_code": record.discount_code,
        "amount": str(record.commission_amount),
    }


def _execute(
    record: PayoutRecord,
    promoter: Optional[PromoterAccount],
    store: DataStore,
    provider: TransferProvider,
) -> PayoutRecord:
    """Drive a PROCESSING payout to COMPLETED or FAILED."""
    ctx = _context(record)

    if promoter is None or not promoter.transfer_destination_id:
        error = NoDestination(record.promoter_id)
        logger.warning(
            "payout_failed",
            extra={**ctx, "status": PayoutStatus.FAILED.value, "reason": FailureReason.NO_DESTINATION.value},
        )
        return store.transition(
            record.id,
            PayoutStatus.FAILED,
            failure_reason=FailureReason.NO_DESTINATION,
            failure_message=str(error),
            processed_at=utcnow(),
        )

    amount_minor = to_minor_units(record.commission_amount)
    if amount_minor == 0:
        # nothing to move; zero-rate lines are kept for audit only
        return store.transition(record.id, PayoutStatus.COMPLETED, processed_at=utcnow())

    try:
        transfer_id = provider.transfer(
            promoter.transfer_destination_id,
            amount_minor,
            record.idempotency_key,
            description=f"Commission for order {record.order_id} - {record.discount_code}",
            metadata={
                "payout_id": record.id,
                "order_id": record.order_id,
                "promoter_id": record.promoter_id,
                "discount_code": record.discount_code,
            },
        )
    except ProviderError as e:
        logger.error(
            "payout_failed",
            extra={**ctx, "status": PayoutStatus.FAILED.value, "reason": e.code},
        )
        return store.transition(
            record.id,
            PayoutStatus.FAILED,
            failure_reason=FailureReason.PROVIDER_ERROR,
            failure_message=f"{e.code}: {e.message}",
            processed_at=utcnow(),
        )
    except Exception as e:
        # never leave a record in PROCESSING after an attempted call
        logger.exception("payout_failed", extra={**ctx, "status": PayoutStatus.FAILED.value, "reason": "UNEXPECTED"})
        return store.transition(
            record.id,
            PayoutStatus.FAILED,
            failure_reason=FailureReason.PROVIDER_ERROR,
            failure_message=str(e) or type(e).__name__,
            processed_at=utcnow(),
        )

    completed = store.transition(
        record.id,
        PayoutStatus.COMPLETED,
        transfer_id=transfer_id,
        processed_at=utcnow(),
    )
    logger.info("payout_completed", extra={**ctx, "status": PayoutStatus.COMPLETED.value, "transfer_id": transfer_id})
    return completed


def settle_payouts(
    promoter_id: str,
    payout_ids: Iterable[str],
    store: DataStore,
    provider: TransferProvider,
    allowed_from: Iterable[PayoutStatus] = (PayoutStatus.PENDING,),
) -> SettlementResult:
    """Settle the given payouts of one promoter, one provider call per payout.

    A payout another worker already claimed is skipped, not failed.
    """
    allowed_from = tuple(allowed_from)
    result = SettlementResult()
    promoter = store.get_promoter(promoter_id)

    for payout_id in payout_ids:
        record = store.get_payout(payout_id)
        if record is None or record.promoter_id != promoter_id:
            logger.warning(
                "payout_skipped",
                extra={"payout_id": payout_id, "promoter_id": promoter_id, "reason": "not this promoter's payout"},
            )
            continue

        try:
            record = store.transition(payout_id, PayoutStatus.PROCESSING, allowed_from=allowed_from)
        except (InvalidTransition, LedgerWriteConflict, PayoutNotFound) as e:
            logger.info("payout_skipped", extra={**_context(record), "reason": str(e)})
            continue

        try:
            final = _execute(record, promoter, store, provider)
        except Exception as e:
            # left in PROCESSING; retry_failed picks it up once it is stale
            logger.exception(
                "payout_outcome_not_recorded",
                extra={**_context(record), "status": PayoutStatus.PROCESSING.value, "reason": str(e)},
            )
            result.failed.append(payout_id)
            continue

        if final.status == PayoutStatus.COMPLETED:
            result.settled.append(final.id)
        else:
            result.failed.append(final.id)

    return result


def evaluate_and_settle(promoter_id: str, store: DataStore, provider: TransferProvider) -> SettlementResult:
    """Apply the merchant's auto-payout policy to one promoter and settle if it triggers."""
    promoter = store.get_promoter(promoter_id)
    if promoter is None:
        raise PromoterNotFound(promoter_id)

    policy = store.get_policy(promoter.merchant_id)
    decision = evaluate_auto_payout(policy, promoter_id, store)
    if not decision.triggered:
        logger.info(
            "auto_payout_not_triggered",
            extra={
                "merchant_id": promoter.merchant_id,
                "promoter_id": promoter_id,
                "amount": str(decision.pending_total),
                "reason": "disabled" if not policy.auto_payout else f"below minimum {decision.minimum_payout_amount}",
            },
        )
        return SettlementResult()

    logger.info(
        "auto_payout_triggered",
        extra={"merchant_id": promoter.merchant_id, "promoter_id": promoter_id, "amount": str(decision.pending_total)},
    )
    return settle_payouts(promoter_id, decision.payout_ids, store, provider)


def _settle_single(
    payout_id: str,
    allowed_from: PayoutStatus,
    store: DataStore,
    provider: TransferProvider,
) -> PayoutRecord:
    if store.get_payout(payout_id) is None:
        raise PayoutNotFound(payout_id)
    record = store.transition(payout_id, PayoutStatus.PROCESSING, allowed_from=(allowed_from,))
    logger.info(
        "payout_attempt",
        extra={**_context(record), "status": PayoutStatus.PROCESSING.value, "reason": f"attempt {record.attempt_count}"},
    )
    return _execute(record, store.get_promoter(record.promoter_id), store, provider)


def _release_stale(record: PayoutRecord, stale_after: timedelta, store: DataStore) -> None:
    claimed_at = record.claimed_at or record.created_at
    retry_after = claimed_at + stale_after
    if utcnow() < retry_after:
        raise PayoutInFlight(record.id, claimed_at.isoformat(), retry_after.isoformat())
    logger.warning(
        "stale_payout_released",
        extra={**_context(record), "status": PayoutStatus.FAILED.value, "reason": f"processing since {claimed_at.isoformat()}"},
    )
    store.transition(
        record.id,
        PayoutStatus.FAILED,
        allowed_from=(PayoutStatus.PROCESSING,),
        failure_reason=FailureReason.STALE_PROCESSING,
        failure_message=f"Attempt started {claimed_at.isoformat()} never recorded an outcome",
        processed_at=utcnow(),
    )


def retry_failed(
    payout_id: str,
    store: DataStore,
    provider: TransferProvider,
    stale_after: Optional[timedelta] = None,
) -> PayoutStatus:
    """Operator-triggered re-attempt of a FAILED payout; returns the new status.

    A PROCESSING payout older than `stale_after` (default
    STALE_PROCESSING_SECONDS) is first released to FAILED. Raises
    PayoutInFlight for a younger PROCESSING payout and InvalidTransition for
    PENDING or COMPLETED ones.
    """
    record = store.get_payout(payout_id)
    if record is None:
        raise PayoutNotFound(payout_id)
    if record.status == PayoutStatus.PROCESSING:
        if stale_after is None:
            stale_after = timedelta(seconds=settings.STALE_PROCESSING_SECONDS)
        _release_stale(record, stale_after, store)
    return _settle_single(payout_id, PayoutStatus.FAILED, store, provider).status


def process_payout(payout_id: str, store: DataStore, provider: TransferProvider) -> PayoutRecord:
    """Settle a single PENDING payout now, regardless of the auto-payout policy."""
    return _settle_single(payout_id, PayoutStatus.PENDING, store, provider)


def _collect(batch: BatchPayoutResult, settled: SettlementResult, store: DataStore) -> None:
    batch.processed += len(settled.settled)
    batch.failed += len(settled.failed)
    for payout_id in settled.failed:
        record = store.get_payout(payout_id)
        reason = record.failure_message if record and record.failure_message else "outcome not recorded"
        batch.errors.append(f"Failed to process payout {payout_id}: {reason}")


def process_auto_payouts(merchant_id: str, store: DataStore, provider: TransferProvider) -> BatchPayoutResult:
    """Run the auto-payout policy for every promoter of a merchant with pending payouts."""
    batch = BatchPayoutResult(mode="auto")
    policy = store.get_policy(merchant_id)
    if not policy.auto_payout:
        return batch

    for promoter_id in store.pending_promoter_ids(merchant_id):
        try:
            decision = evaluate_auto_payout(policy, promoter_id, store)
            if not decision.triggered:
                batch.skipped += decision.pending_count
                continue
            _collect(batch, settle_payouts(promoter_id, decision.payout_ids, store, provider), store)
        except Exception as e:
            logger.exception("promoter_settlement_error", extra={"merchant_id": merchant_id, "promoter_id": promoter_id})
            batch.errors.append(f"Failed to settle promoter {promoter_id}: {e}")

    return batch


def process_bulk_payouts(merchant_id: str, store: DataStore, provider: TransferProvider) -> BatchPayoutResult:
    """Settle every PENDING payout of a merchant, ignoring the minimum threshold."""
    batch = BatchPayoutResult(mode="manual")

    for promoter_id in store.pending_promoter_ids(merchant_id):
        try:
            pending = store.pending_for_promoter(merchant_id, promoter_id)
            _collect(batch, settle_payouts(promoter_id, [p.id for p in pending], store, provider), store)
        except Exception as e:
            logger.exception("promoter_settlement_error", extra={"merchant_id": merchant_id, "promoter_id": promoter_id})
            batch.errors.append(f"Failed to settle promoter {promoter_id}: {e}")

    return batch
