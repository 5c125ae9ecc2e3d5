from app.errors import InvalidTransition
from app.models import PayoutStatus

ALLOWED: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.FAILED: frozenset({PayoutStatus.PROCESSING}),  # manual / scheduled retry
    PayoutStatus.COMPLETED: frozenset(),
}


def can_transition(old: PayoutStatus, new: PayoutStatus) -> bool:
    return new in ALLOWED.get(PayoutStatus(old), frozenset())


def assert_transition(old: PayoutStatus, new: PayoutStatus, payout_id: str | None = None) -> None:
    if not can_transition(old, new):
        raise InvalidTransition(PayoutStatus(old).value, PayoutStatus(new).value, payout_id)


def assert_completed_invariant(new: PayoutStatus, transfer_id: str | None, commission_cents: int) -> None:
    """A COMPLETED payout with a non-zero amount must carry the provider transfer id."""
    if new == PayoutStatus.COMPLETED and commission_cents > 0 and not transfer_id:
        raise ValueError("Invariant violation: status=COMPLETED requires transfer_id")
