"""Order pricing: subtotal, tax, shipping, discount and total."""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from config import FLAT_SHIPPING_FEE, FREE_SHIPPING_THRESHOLD, TAX_RATE
from errors import InvalidSelection

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Round a number to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Discount:
    """A discount descriptor: percentage of the subtotal or a fixed amount."""

    code: str
    type: str
    value: Decimal

    def __post_init__(self):
        if self.type == "percentage":
            if not (1 <= self.value <= 100):
                raise InvalidSelection("Percentage discount must be between 1 and 100", code=self.code)
        elif self.type == "fixed":
            if self.value < 0:
                raise InvalidSelection("Fixed discount can't be negative", code=self.code)
        else:
            raise InvalidSelection(f"Unknown discount type: {self.type}", code=self.code)

    def amount_for(self, subtotal: Decimal) -> Decimal:
        if self.type == "percentage":
            return to_money(subtotal * self.value / Decimal(100))
        return to_money(self.value)


@dataclass(frozen=True)
class OrderTotals:
    """Money fields of an order, derived from its items and discount."""

    items_subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount_amount: Decimal
    total: Decimal


def compute_totals(
    lines: Iterable[Tuple[Decimal, int]],
    discount: Optional[Discount] = None,
    tax_rate: Decimal = TAX_RATE,
    free_shipping_threshold: Decimal = FREE_SHIPPING_THRESHOLD,
    flat_shipping_fee: Decimal = FLAT_SHIPPING_FEE
) -> OrderTotals:
    """
    Compute order totals.

    Tax and the discount are both taken on the undiscounted items subtotal.
    Shipping is free strictly above the threshold. The total never goes
    below zero.

    Args:
        lines: (unit_price, quantity) pairs
        discount: Optional discount descriptor
        tax_rate: Tax rate applied to the subtotal
        free_shipping_threshold: Subtotal above which shipping is free
        flat_shipping_fee: Shipping fee charged otherwise

    Returns:
        Order totals rounded to cents
    """
    subtotal = to_money(sum((Decimal(price) * qty for price, qty in lines), ZERO))
    tax = to_money(subtotal * tax_rate)
    shipping = ZERO if subtotal > free_shipping_threshold else to_money(flat_shipping_fee)
    discount_amount = discount.amount_for(subtotal) if discount else ZERO
    total = max(ZERO, to_money(subtotal + tax + shipping - discount_amount))

    return OrderTotals(
        items_subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        discount_amount=discount_amount,
        total=total
    )
