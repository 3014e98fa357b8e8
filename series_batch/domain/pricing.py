"""
Pricing -- Series total with the per-frequency recurring discount.

Pure functions over Decimal.  Amounts are rounded to cents, half-up;
floats are never accepted.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from series_kernel.exceptions import ValidationError

CENTS = Decimal("0.01")


def to_price(value: object, field: str = "base_price") -> Decimal:
    """Coerce a str/int/Decimal price to a non-negative Decimal in cents."""
    if isinstance(value, (float, bool)) or value is None:
        raise ValidationError(field, f"must be a Decimal, int or string, got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(field, f"not a number: {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(field, f"must be a non-negative amount, got {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def apply_discount(amount: Decimal, discount: Decimal) -> Decimal:
    return (amount * (Decimal("1") - discount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def series_total(base_price: Decimal, number_of_visits: int, discount: Decimal) -> Decimal:
    """Total price of a series: base x visits, less the recurring discount."""
    return apply_discount(base_price * number_of_visits, discount)


def per_visit_price(base_price: Decimal, discount: Decimal) -> Decimal:
    """Price carried by each materialized booking."""
    return apply_discount(base_price, discount)
