"""
Deterministic test-data generator.

Produces:
  - 2 merchants
    - M-001: auto-payout on, $50 minimum, commission on the discounted amount
    - M-002: auto-payout off, commission on the original amount
  - 5 promoters (10 % / 12.5 % / 15 % / 8 % / 0 % commission), one without a
    transfer destination
  - one promoter code per promoter plus storefront codes owned by nobody,
    one inactive and one expired promoter code
  - 60 orders spread over Jan 2026, ~60 % redeeming a promoter code,
    ~20 % a storefront code, the rest no code at all
"""

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.intake import handle_order_created
from app.models import (
    AppliedDiscount,
    CalculationBase,
    DiscountCode,
    MerchantPayoutPolicy,
    OrderEvent,
    PromoterAccount,
)
from app.store import DataStore
from app.transfers import TransferProvider

SEED = 42
START = datetime(2026, 1, 1, tzinfo=timezone.utc)
END   = datetime(2026, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


def _rand_dt(rng: random.Random, lo: datetime = START, hi: datetime = END) -> datetime:
    delta = hi - lo
    secs = rng.randint(0, int(delta.total_seconds()))
    return lo + timedelta(seconds=secs)


def seed(store: DataStore, provider: TransferProvider) -> None:
    rng = random.Random(SEED)

    # ── policies ─────────────────────────────────────────────────────────────
    store.set_policy(MerchantPayoutPolicy(
        merchant_id="M-001",
        auto_payout=True,
        minimum_payout_amount=Decimal("50.00"),
        calculation_base=CalculationBase.DISCOUNTED_AMOUNT,
    ))
    store.set_policy(MerchantPayoutPolicy(
        merchant_id="M-002",
        auto_payout=False,
        minimum_payout_amount=Decimal("25.00"),
        calculation_base=CalculationBase.ORIGINAL_AMOUNT,
    ))

    # ── promoters ────────────────────────────────────────────────────────────
    promoters = [
        PromoterAccount(id="P-001", merchant_id="M-001", name="Sarah Wilson",
                        commission_rate=Decimal("10"), transfer_destination_id="acct_sarahwilson"),
        PromoterAccount(id="P-002", merchant_id="M-001", name="Mike Johnson",
                        commission_rate=Decimal("12.5"), transfer_destination_id="acct_mikejohnson"),
        # not onboarded for transfers yet
        PromoterAccount(id="P-003", merchant_id="M-001", name="Ana Costa",
                        commission_rate=Decimal("15")),
        PromoterAccount(id="P-004", merchant_id="M-002", name="Lee Park",
                        commission_rate=Decimal("8"), transfer_destination_id="acct_leepark"),
        # audit-only promoter
        PromoterAccount(id="P-005", merchant_id="M-002", name="Store Staff",
                        commission_rate=Decimal("0"), transfer_destination_id="acct_storestaff"),
    ]
    for p in promoters:
        store.add_promoter(p)

    # ── discount codes ───────────────────────────────────────────────────────
    codes = [
        DiscountCode(id="DC-001", merchant_id="M-001", code="SARAH10", promoter_id="P-001"),
        DiscountCode(id="DC-002", merchant_id="M-001", code="MIKE15", promoter_id="P-002", usage_limit=100),
        DiscountCode(id="DC-003", merchant_id="M-001", code="ANA20", promoter_id="P-003"),
        DiscountCode(id="DC-004", merchant_id="M-002", code="LEE5", promoter_id="P-004"),
        DiscountCode(id="DC-005", merchant_id="M-002", code="STAFF", promoter_id="P-005"),
        DiscountCode(id="DC-006", merchant_id="M-001", code="OLDSARAH", promoter_id="P-001", is_active=False),
        DiscountCode(id="DC-007", merchant_id="M-002", code="LEEWINTER", promoter_id="P-004",
                     expires_at=datetime(2026, 1, 10, tzinfo=timezone.utc)),
        # storefront codes, no promoter
        DiscountCode(id="DC-008", merchant_id="M-001", code="WELCOME10"),
        DiscountCode(id="DC-009", merchant_id="M-002", code="FREESHIP"),
    ]
    for c in codes:
        store.add_discount_code(c)

    promoter_codes = {
        "M-001": ["SARAH10", "MIKE15", "ANA20", "OLDSARAH"],
        "M-002": ["LEE5", "STAFF", "LEEWINTER"],
    }
    storefront_codes = {"M-001": ["WELCOME10"], "M-002": ["FREESHIP"]}

    # ── orders ───────────────────────────────────────────────────────────────
    total = 60
    for n in range(1, total + 1):
        merchant_id = rng.choice(["M-001", "M-002"])
        original = Decimal(str(round(rng.uniform(20, 400), 2)))
        roll = rng.random()
        if roll < 0.60:
            code = rng.choice(promoter_codes[merchant_id])
        elif roll < 0.80:
            code = rng.choice(storefront_codes[merchant_id])
        else:
            code = None

        applied = []
        if code is not None:
            pct = Decimal(rng.choice([5, 10, 15, 20])) / Decimal("100")
            applied.append(AppliedDiscount(code=code, discount_amount=(original * pct).quantize(Decimal("0.01"))))

        handle_order_created(
            OrderEvent(
                merchant_id=merchant_id,
                order_id=f"O-{n:04d}",
                original_amount=original,
                discount_codes=applied,
                created_at=_rand_dt(rng),
            ),
            store,
            provider,
        )
