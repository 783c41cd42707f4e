"""
Traveler-tier pricing.

Amounts are integer minor units (cents). Fractions of a cent produced by the
child discount or the service fee are rounded half-up, once, at the end of
each component so the breakdown always sums exactly to the total.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Tuple

from booking_errors import ValidationError
from booking_schemas import PriceBreakdown, Traveler

CHILD_RATE = Decimal("0.5")
INFANT_RATE = Decimal("0")
SERVICE_FEE_RATE = Decimal("0.05")


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_price(unit_price: int, adults: int, children: int = 0, infants: int = 0) -> PriceBreakdown:
    if unit_price < 0:
        raise ValidationError(f"unit price must be non-negative, got {unit_price}")
    if adults < 0 or children < 0 or infants < 0:
        raise ValidationError("traveler counts must be non-negative")
    if adults < 1:
        raise ValidationError("every booking needs at least one adult")
    if infants > adults:
        raise ValidationError(f"{infants} infants cannot be chaperoned by {adults} adults")

    adult_total = adults * unit_price
    child_total = _round_cents(children * unit_price * CHILD_RATE)
    infant_total = _round_cents(infants * unit_price * INFANT_RATE)
    service_fee = _round_cents((adult_total + child_total + infant_total) * SERVICE_FEE_RATE)

    return PriceBreakdown(
        adult_total=adult_total,
        child_total=child_total,
        infant_total=infant_total,
        service_fee=service_fee,
        total=adult_total + child_total + infant_total + service_fee,
    )


def count_travelers(travelers: Iterable[Traveler]) -> Tuple[int, int, int]:
    adults = children = infants = 0
    for t in travelers:
        if t.type == "adult":
            adults += 1
        elif t.type == "child":
            children += 1
        else:
            infants += 1
    return adults, children, infants


def price_for_travelers(unit_price: int, travelers: Iterable[Traveler]) -> PriceBreakdown:
    return compute_price(unit_price, *count_travelers(travelers))


def to_major_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def format_money(amount: int, currency: str) -> str:
    return f"{to_major_units(amount):,.2f} {currency.upper()}"
