from decimal import Decimal

_TWO_DP = Decimal("0.01")
_CENTS_PER_UNIT = Decimal("100")


def round2(amount: Decimal) -> Decimal:
    """Round a currency amount to 2 dp."""
    return Decimal(amount).quantize(_TWO_DP)


def to_minor_units(amount: Decimal) -> int:
    """Decimal currency amount → integer cents. Amount is rounded to 2 dp first."""
    return int(round2(amount) * _CENTS_PER_UNIT)


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / _CENTS_PER_UNIT).quantize(_TWO_DP)
