"""Minor/major currency unit conversions for commissions and payouts."""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = Decimal(100)


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert an integer amount in minor units (cents) to a major-unit Decimal."""
    return (Decimal(amount_minor) / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to minor units, flooring fractions of a cent."""
    return int((amount * MINOR_UNITS_PER_MAJOR).to_integral_value(rounding=ROUND_DOWN))


def compute_commission(amount_minor: int, rate: Decimal) -> Decimal:
    """
    Affiliate commission for a gross payment.

    Args:
        amount_minor: Gross payment in minor units (e.g. 5000 for $50.00)
        rate: Share paid to the referrer (e.g. Decimal("0.5"))

    Returns:
        Decimal: Commission in major units, rounded half-up to the cent

    Example:
        >>> compute_commission(5000, Decimal("0.5"))
        Decimal('25.00')
    """
    return (Decimal(amount_minor) * rate / MINOR_UNITS_PER_MAJOR).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
