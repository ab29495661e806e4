"""Tests for cart discount arithmetic."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pos_ledger import discounts
from pos_ledger.errors import ValidationError


D = Decimal


@pytest.mark.parametrize(
    ("subtotals", "total", "expected"),
    [
        ([D("300")], D("30"), [D("30")]),
        ([D("200"), D("50")], D("25"), [D("20"), D("5")]),
        ([D("100"), D("100"), D("100")], D("100"), [D("33"), D("33"), D("34")]),
        ([D("10"), D("10"), D("10")], D("0"), [D("0"), D("0"), D("0")]),
    ],
)
def test_allocate_splits_proportionally(subtotals, total, expected):
    assert discounts.allocate(subtotals, total) == expected


@pytest.mark.parametrize(
    ("subtotals", "total"),
    [
        ([D("99"), D("1"), D("7")], D("13")),
        ([D("333"), D("333"), D("334")], D("101")),
        ([D("45"), D("55"), D("60"), D("80")], D("37")),
    ],
)
def test_allocate_shares_always_sum_to_total(subtotals, total):
    """The last line absorbs rounding so nothing is lost."""

    shares = discounts.allocate(subtotals, total)

    assert sum(shares) == total
    assert len(shares) == len(subtotals)


def test_allocate_handles_empty_and_zero_carts():
    assert discounts.allocate([], D("10")) == []
    assert discounts.allocate([D("0"), D("0")], D("10")) == [D("0"), D("0")]


def test_allocate_respects_quantum():
    shares = discounts.allocate([D("10"), D("20")], D("1"), quantum=D("0.01"))

    assert shares == [D("0.33"), D("0.67")]


def test_allocate_last_line_can_absorb_a_negative_remainder():
    shares = discounts.allocate([D("1"), D("1"), D("0")], D("1"))

    assert shares == [D("1"), D("1"), D("-1")]
    assert discounts.final_unit_price(D("0"), shares[-1], 1) == D("1")


def test_round_money_rounds_half_up():
    assert discounts.round_money(D("2.5")) == D("3")
    assert discounts.round_money(D("3.5")) == D("4")
    assert discounts.round_money(D("1.005"), D("0.01")) == D("1.01")


def test_amount_and_percentage_conversions():
    assert discounts.amount_from_percentage(D("10"), D("250")) == D("25")
    assert discounts.percentage_from_amount(D("30"), D("300")) == D("10")
    assert discounts.percentage_from_amount(D("5"), D("0")) == D("0")


def test_final_unit_price_spreads_line_discount():
    assert discounts.final_unit_price(D("100"), D("30"), 3) == D("90")

    with pytest.raises(ValidationError):
        discounts.final_unit_price(D("100"), D("30"), 0)


def test_loss_amount_is_original_minus_recovered():
    assert discounts.loss_amount(D("100"), D("20")) == D("80")


def test_cart_discount_by_amount_derives_percentage():
    discount = discounts.CartDiscount.by_amount(D("50"), D("200"))

    assert discount.percentage == D("25")
    assert discount.mode is discounts.DiscountMode.AMOUNT


def test_cart_discount_by_percentage_derives_amount():
    discount = discounts.CartDiscount.by_percentage(D("15"), D("200"))

    assert discount.amount == D("30")
    assert discount.mode is discounts.DiscountMode.PERCENTAGE


def test_cart_discount_rebased_keeps_last_edited_field():
    by_percentage = discounts.CartDiscount.by_percentage(D("10"), D("200")).rebased(D("500"))
    by_amount = discounts.CartDiscount.by_amount(D("20"), D("200")).rebased(D("400"))

    assert by_percentage.amount == D("50")
    assert by_amount.amount == D("20")
    assert by_amount.percentage == D("5")


@pytest.mark.parametrize("percentage", [D("-1"), D("100.5")])
def test_cart_discount_rejects_out_of_range_percentage(percentage):
    with pytest.raises(ValidationError):
        discounts.CartDiscount.by_percentage(percentage, D("100"))


def test_cart_discount_rejects_negative_amount():
    with pytest.raises(ValidationError):
        discounts.CartDiscount.by_amount(D("-5"), D("100"))
