"""
Transfer providers used by settlement to pay promoters.

Every call carries an idempotency key derived from the payout id, so a
provider-side retry, an SDK network retry or an operator re-run of the same
payout can never create a second transfer.
"""
import hashlib
import logging
from typing import Optional, Protocol

import stripe

from app.config import Settings
from app.errors import ProviderError

logger = logging.getLogger(__name__)


class TransferProvider(Protocol):
    def transfer(
        self,
        destination_id: str,
        amount_minor_units: int,
        idempotency_key: str,
        *,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """Send funds and return the provider transfer id, or raise ProviderError."""
        ...


class MockTransferProvider:
    """Completes every transfer locally; the id is stable per idempotency key."""

    def transfer(
        self,
        destination_id: str,
        amount_minor_units: int,
        idempotency_key: str,
        *,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        digest = hashlib.sha1(idempotency_key.encode("utf-8")).hexdigest()[:16]
        transfer_id = f"tr_mock_{digest}"
        logger.info(
            f"mock transfer {transfer_id} to {destination_id} ({idempotency_key})",
            extra={"amount": amount_minor_units},
        )
        return transfer_id


class StripeTransferProvider:
    """Stripe Connect transfers from the platform balance to a promoter account."""

    def __init__(
        self,
        secret_key: str,
        currency: str = "usd",
        timeout_seconds: float = 5.0,
        max_network_retries: int = 0,
    ) -> None:
        if not secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required for the stripe transfer provider")
        self._api_key = secret_key
        self._currency = currency
        # bound every provider call; a timeout surfaces as APIConnectionError
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        stripe.max_network_retries = max_network_retries

    def transfer(
        self,
        destination_id: str,
        amount_minor_units: int,
        idempotency_key: str,
        *,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        try:
            transfer = stripe.Transfer.create(
                amount=amount_minor_units,
                currency=self._currency,
                destination=destination_id,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe unreachable creating transfer {idempotency_key}: {e}")
            raise ProviderError(
                code="NETWORK_ERROR",
                message=f"Transfer provider unreachable or timed out: {e.user_message or e}",
                retryable=True,
            )
        except stripe.RateLimitError as e:
            raise ProviderError(code="RATE_LIMITED", message=str(e), retryable=True)
        except (stripe.InvalidRequestError, stripe.PermissionError) as e:
            logger.error(f"Stripe rejected transfer {idempotency_key}: {e}")
            raise ProviderError(
                code=getattr(e, "code", None) or "DECLINED",
                message=str(e),
                retryable=False,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating transfer {idempotency_key}: {e}")
            raise ProviderError(code="PROVIDER_ERROR", message=str(e), retryable=True)

        return transfer.id


def make_provider(settings: Settings) -> TransferProvider:
    if settings.TRANSFER_PROVIDER == "stripe":
        return StripeTransferProvider(
            secret_key=settings.STRIPE_SECRET_KEY or "",
            currency=settings.TRANSFER_CURRENCY,
            timeout_seconds=settings.TRANSFER_TIMEOUT_SECONDS,
            max_network_retries=settings.TRANSFER_MAX_NETWORK_RETRIES,
        )
    return MockTransferProvider()
