"""Stars conversion: money in minor units to the internal virtual currency."""

from decimal import ROUND_HALF_EVEN, Decimal

STARS_QUANTUM = Decimal("0.01")
MINOR_UNITS_PER_UNIT = 100


def stars_for_amount(amount_cents: int, rate: Decimal | int | str) -> Decimal:
    """Return `amount * rate` Stars for an amount given in cents.

    `rate` is Stars per whole currency unit. The product is computed exactly
    in `Decimal` and rounded half-to-even to two places, so integer rates never
    drift (500 cents at rate 100 is exactly 500 Stars).
    """

    if amount_cents < 0:
        raise ValueError("amount_cents must be non-negative")
    rate = Decimal(str(rate)) if not isinstance(rate, Decimal) else rate
    if rate < 0:
        raise ValueError("rate must be non-negative")
    stars = Decimal(amount_cents) * rate / MINOR_UNITS_PER_UNIT
    return stars.quantize(STARS_QUANTUM, rounding=ROUND_HALF_EVEN)
