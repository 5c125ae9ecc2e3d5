from datetime import datetime, timezone
from typing import Optional

from app.errors import NoAttributionFound
from app.models import DiscountCode, PromoterAccount, utcnow
from app.store import DataStore


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def resolve_attribution(
    merchant_id: str,
    code: str,
    store: DataStore,
    at: Optional[datetime] = None,
) -> tuple[PromoterAccount, DiscountCode]:
    """Map a redeemed code to its owning promoter within one merchant.

    Raises NoAttributionFound when the code is unknown to the merchant, has no
    promoter, is inactive, had expired when the order was placed, or belongs to
    a deactivated promoter.
    """
    found = store.find_by_code(merchant_id, code)
    if found is None:
        raise NoAttributionFound(merchant_id, code)

    promoter, discount_code = found
    # both checks guard against a code moved between merchants
    if discount_code.merchant_id != merchant_id or promoter.merchant_id != merchant_id:
        raise NoAttributionFound(merchant_id, code)
    if not discount_code.is_active or not promoter.is_active:
        raise NoAttributionFound(merchant_id, code)

    ordered_at = _aware(at or utcnow())
    if discount_code.expires_at is not None and _aware(discount_code.expires_at) <= ordered_at:
        raise NoAttributionFound(merchant_id, code)

    return promoter, discount_code
