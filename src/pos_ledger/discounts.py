"""Cart discount arithmetic.

Everything here is pure :class:`~decimal.Decimal` math with half-up rounding
to a configurable quantum (whole currency units by default), so allocations
are exact and reproducible.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Sequence

from .errors import ValidationError


WHOLE_UNITS = Decimal("1")
HUNDRED = Decimal("100")


def round_money(value: Decimal, quantum: Decimal = WHOLE_UNITS) -> Decimal:
    """Round ``value`` half-up to the nearest multiple of ``quantum``."""

    return (Decimal(value) / quantum).to_integral_value(rounding=ROUND_HALF_UP) * quantum


def allocate(
    line_subtotals: Sequence[Decimal],
    total_discount: Decimal,
    *,
    quantum: Decimal = WHOLE_UNITS,
) -> List[Decimal]:
    """Split a cart-level discount across lines in proportion to their subtotals.

    Every line but the last receives ``round(total * subtotal / cart_subtotal)``.
    The last line receives whatever remains, so the shares always add up to
    ``total_discount`` exactly. A zero cart subtotal yields zero shares.

    Rounding every earlier share up can leave the last line with a negative
    share, e.g. subtotals ``[1, 1, 0]`` and a discount of 1 give
    ``[1, 1, -1]``, which raises that line's final unit price above its
    list price. Callers that need non-negative shares must order the cart so
    the last line can absorb the remainder.

    Args:
        line_subtotals (Sequence[Decimal]): ``unit_price * quantity`` per line,
            in cart order.
        total_discount (Decimal): Cart-level discount amount.
        quantum (Decimal): Rounding step for the proportional shares.

    Returns:
        list[Decimal]: One share per line.
    """

    subtotals = [Decimal(value) for value in line_subtotals]
    if not subtotals:
        return []

    cart_subtotal = sum(subtotals, Decimal("0"))
    if cart_subtotal == 0:
        return [Decimal("0") for _ in subtotals]

    total = Decimal(total_discount)
    shares = [round_money(total * value / cart_subtotal, quantum) for value in subtotals[:-1]]
    shares.append(total - sum(shares, Decimal("0")))
    return shares


def amount_from_percentage(percentage: Decimal, subtotal: Decimal, *, quantum: Decimal = WHOLE_UNITS) -> Decimal:
    return round_money(Decimal(percentage) / HUNDRED * Decimal(subtotal), quantum)


def percentage_from_amount(amount: Decimal, subtotal: Decimal, *, quantum: Decimal = WHOLE_UNITS) -> Decimal:
    """Express ``amount`` as a rounded percentage of ``subtotal`` (0 for an empty cart)."""

    if Decimal(subtotal) == 0:
        return Decimal("0")
    return round_money(Decimal(amount) / Decimal(subtotal) * HUNDRED, quantum)


def final_unit_price(unit_price: Decimal, line_discount: Decimal, quantity: int) -> Decimal:
    """Effective unit price after the line's share of the cart discount."""

    if quantity <= 0:
        raise ValidationError("Quantity must be greater than zero")
    return Decimal(unit_price) - Decimal(line_discount) / quantity


def loss_amount(original_value: Decimal, recovered_value: Decimal) -> Decimal:
    return Decimal(original_value) - Decimal(recovered_value)


class DiscountMode(str, Enum):
    """Which of the two representations the cashier last edited."""

    AMOUNT = "amount"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class CartDiscount:
    """Cart-level discount kept in both amount and percentage form.

    The value object never touches cart lines. Switching between the amount
    and percentage representations only recomputes the derived field, and
    :meth:`rebased` keeps whichever field was entered last when the cart
    subtotal changes.
    """

    amount: Decimal = Decimal("0")
    percentage: Decimal = Decimal("0")
    mode: DiscountMode = DiscountMode.AMOUNT
    quantum: Decimal = WHOLE_UNITS

    @classmethod
    def by_amount(cls, amount: Decimal, subtotal: Decimal, *, quantum: Decimal = WHOLE_UNITS) -> "CartDiscount":
        amount = Decimal(amount)
        if amount < 0:
            raise ValidationError("Discount must be zero or positive")
        return cls(
            amount=amount,
            percentage=percentage_from_amount(amount, subtotal, quantum=quantum),
            mode=DiscountMode.AMOUNT,
            quantum=quantum,
        )

    @classmethod
    def by_percentage(cls, percentage: Decimal, subtotal: Decimal, *, quantum: Decimal = WHOLE_UNITS) -> "CartDiscount":
        percentage = Decimal(percentage)
        if percentage < 0 or percentage > HUNDRED:
            raise ValidationError("Discount percentage must be between 0 and 100")
        return cls(
            amount=amount_from_percentage(percentage, subtotal, quantum=quantum),
            percentage=percentage,
            mode=DiscountMode.PERCENTAGE,
            quantum=quantum,
        )

    def rebased(self, subtotal: Decimal) -> "CartDiscount":
        """Recompute the derived field against a new cart subtotal."""

        if self.mode is DiscountMode.PERCENTAGE:
            return CartDiscount.by_percentage(self.percentage, subtotal, quantum=self.quantum)
        return CartDiscount.by_amount(self.amount, subtotal, quantum=self.quantum)
