# cinehold/domain/pricing.py
"""
Price engine for a checkout.

All amounts are integers in the smallest currency unit. Seat multipliers and
percentage values are Decimals, and the seat total, the pre-discount total and
the discount stay exact Decimals until the grand total is rounded, once,
half-up. The reported seat subtotal is that exact sum rounded for display, and
the reported discount is whatever closes the gap to the grand total, so
``pre_discount_total - discount == grand_total`` always holds.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable


BELOW_MINIMUM = "below minimum"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


@dataclass(frozen=True)
class PricedSeat:
    seat_id: int
    multiplier: Decimal


@dataclass(frozen=True)
class ComboLine:
    product_id: int
    unit_price: int
    quantity: int


@dataclass(frozen=True)
class PromotionTerms:
    code: str
    discount_type: DiscountType
    value: Decimal
    max_discount_amount: int | None = None
    min_order_amount: int = 0


@dataclass(frozen=True)
class Breakdown:
    seat_subtotal: int
    combo_subtotal: int
    pre_discount_total: int
    discount: int
    grand_total: int
    promotion_code: str | None = None
    promotion_rejected: str | None = None
    seat_count: int = 0
    combo_lines: tuple = field(default_factory=tuple)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 1.5 as 1.5 instead of the binary float expansion
    return Decimal(str(value))


def seat_subtotal(base_price: int, seats: Iterable[PricedSeat]) -> Decimal:
    return sum(
        (Decimal(base_price) * _as_decimal(seat.multiplier) for seat in seats),
        Decimal(0),
    )


def combo_subtotal(items: Iterable[ComboLine]) -> int:
    total = 0
    for item in items:
        if item.quantity <= 0:
            raise ValueError(f"Combo quantity must be positive, got {item.quantity}")
        total += item.unit_price * item.quantity
    return total


def discount_for(pre_discount_total, promotion: PromotionTerms) -> Decimal:
    """Exact discount, capped and never larger than the total it applies to."""
    pre_discount_total = _as_decimal(pre_discount_total)
    value = _as_decimal(promotion.value)
    if value < 0:
        raise ValueError("Promotion value must not be negative")

    if promotion.discount_type == DiscountType.PERCENTAGE:
        discount = pre_discount_total * value / Decimal(100)
        if promotion.max_discount_amount is not None:
            discount = min(discount, Decimal(promotion.max_discount_amount))
    elif promotion.discount_type == DiscountType.FIXED_AMOUNT:
        discount = value
    else:
        raise ValueError(f"Unknown discount type {promotion.discount_type!r}")

    return max(Decimal(0), min(discount, pre_discount_total))


def compute_total(
    base_price: int,
    seats: Iterable[PricedSeat],
    combo_items: Iterable[ComboLine] = (),
    promotion: PromotionTerms | None = None,
    promotion_rejected: str | None = None,
) -> Breakdown:
    """
    Pure function: same inputs always yield the same Breakdown.

    ``promotion_rejected`` lets the caller carry an eligibility rejection
    (window, scope, usage) decided before pricing into the breakdown.
    """
    seats = tuple(seats)
    combo_items = tuple(combo_items)

    exact_seats = seat_subtotal(base_price, seats)
    combos_total = combo_subtotal(combo_items)
    exact_pre_discount = exact_seats + combos_total

    seats_total = round_half_up(exact_seats)
    pre_discount = seats_total + combos_total

    exact_discount = Decimal(0)
    code = None
    rejected = promotion_rejected

    if promotion is not None and rejected is None:
        code = promotion.code
        if exact_pre_discount < promotion.min_order_amount:
            rejected = BELOW_MINIMUM
        else:
            exact_discount = discount_for(exact_pre_discount, promotion)

    grand_total = round_half_up(exact_pre_discount - exact_discount)

    return Breakdown(
        seat_subtotal=seats_total,
        combo_subtotal=combos_total,
        pre_discount_total=pre_discount,
        discount=pre_discount - grand_total,
        grand_total=grand_total,
        promotion_code=code if rejected is None else None,
        promotion_rejected=rejected,
        seat_count=len(seats),
        combo_lines=combo_items,
    )
