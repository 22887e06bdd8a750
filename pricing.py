from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence

from config import TAX_RATE, FREE_SHIPPING_THRESHOLD, FLAT_SHIPPING_FEE, CURRENCY_MINOR_UNIT
from schemas import LineItem, Totals

ZERO = Decimal("0")


def round_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CURRENCY_MINOR_UNIT, rounding=ROUND_HALF_UP)


def subtotal(items: Iterable[LineItem]) -> Decimal:
    return round_money(sum((i.unit_price * i.quantity for i in items), ZERO))


def tax(items: Iterable[LineItem]) -> Decimal:
    return round_money(subtotal(items) * TAX_RATE)


def shipping(items: Sequence[LineItem]) -> Decimal:
    # an empty cart ships nothing, so it pays nothing
    if not items:
        return round_money(ZERO)
    if subtotal(items) >= FREE_SHIPPING_THRESHOLD:
        return round_money(ZERO)
    return round_money(FLAT_SHIPPING_FEE)


def grand_total(items: Sequence[LineItem]) -> Decimal:
    return compute_totals(items).grand_total


def compute_totals(items: Sequence[LineItem]) -> Totals:
    items = list(items)
    sub = subtotal(items)
    tx = round_money(sub * TAX_RATE)
    ship = shipping(items)
    return Totals(subtotal=sub, tax=tx, shipping=ship, grand_total=sub + tx + ship)


def to_minor_units(amount: Decimal) -> int:
    """Amount in the currency's smallest unit, as payment gateways expect it."""
    return int((round_money(amount) / CURRENCY_MINOR_UNIT).to_integral_value(rounding=ROUND_HALF_UP))
