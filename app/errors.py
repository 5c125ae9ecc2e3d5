from typing import Optional


class PayoutEngineError(Exception):
    """Base class for every error raised by the commission engine."""


class InvalidAmountError(PayoutEngineError, ValueError):
    pass


class NoAttributionFound(PayoutEngineError):
    """The redeemed code is not an active promoter code for this merchant.

    Expected for most storefront codes; callers skip it, never retry.
    """

    def __init__(self, merchant_id: str, code: str) -> None:
        super().__init__(f"No promoter owns code '{code}' for merchant '{merchant_id}'")
        self.merchant_id = merchant_id
        self.code = code


class DuplicateEvent(PayoutEngineError):
    """A payout already exists for (merchant, order, discount code)."""

    def __init__(self, payout_id: str) -> None:
        super().__init__(f"Payout '{payout_id}' already recorded for this order and code")
        self.payout_id = payout_id


class NoDestination(PayoutEngineError):
    def __init__(self, promoter_id: str) -> None:
        super().__init__(f"Promoter '{promoter_id}' has no transfer destination")
        self.promoter_id = promoter_id


class ProviderError(PayoutEngineError):
    """The transfer provider declined, errored or timed out."""

    def __init__(self, code: str, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable


class LedgerWriteConflict(PayoutEngineError):
    """A concurrent writer changed the payout between read and update."""


class InvalidTransition(PayoutEngineError):
    def __init__(self, old: str, new: str, payout_id: Optional[str] = None, message: Optional[str] = None) -> None:
        where = f" for payout '{payout_id}'" if payout_id else ""
        super().__init__(message or f"Illegal payout transition{where}: {old} -> {new}")
        self.old = old
        self.new = new
        self.payout_id = payout_id


class PayoutNotFound(PayoutEngineError, LookupError):
    def __init__(self, payout_id: str) -> None:
        super().__init__(f"Payout '{payout_id}' not found")
        self.payout_id = payout_id


class PromoterNotFound(PayoutEngineError, LookupError):
    def __init__(self, promoter_id: str) -> None:
        super().__init__(f"Promoter '{promoter_id}' not found")
        self.promoter_id = promoter_id


class PayoutInFlight(InvalidTransition):
    """A PROCESSING payout whose attempt is too recent to be declared lost."""

    def __init__(self, payout_id: str, claimed_at: str, retry_after: str) -> None:
        super().__init__(
            "PROCESSING",
            "PROCESSING",
            payout_id,
            f"Payout '{payout_id}' has been PROCESSING since {claimed_at}; "
            f"it can be retried after {retry_after}",
        )
        self.claimed_at = claimed_at
        self.retry_after = retry_after
