"""Selling price and discount derivation.

All functions here are pure. A zero MRP yields a 0% discount rather than a
division error, and discounts are never negative.
"""
from typing import Iterable

from .schemas import CartLine, CartTotals, PriceBreakdown, Product, ReplacementQuote
from .utils import money, round_half_up

GST_RATE = 0.18


def selling_price(product: Product, is_b2b: bool = False) -> float:
    mrp = float(product.mrp_price or 0)
    price = product.selling_price_b2b if is_b2b else None
    if price is None:
        price = product.selling_price_b2c
    return float(mrp if price is None else price)


def discount(mrp: float, price: float) -> tuple[float, int]:
    mrp = float(mrp or 0)
    amount = max(0.0, mrp - float(price or 0))
    if mrp <= 0:
        return amount, 0
    pct = int(round_half_up(amount / mrp * 100))
    return amount, max(0, min(100, pct))


def price_for(product: Product, is_b2b: bool = False) -> PriceBreakdown:
    mrp = float(product.mrp_price or 0)
    price = selling_price(product, is_b2b)
    amount, pct = discount(mrp, price)
    return PriceBreakdown(mrp=mrp, selling_price=price, discount_amount=amount, discount_percent=pct)


def line_total(line: CartLine) -> float:
    return line.unit_price * line.quantity


def line_savings(line: CartLine) -> float:
    return max(0.0, (line.unit_mrp - line.unit_price) * line.quantity)


def cart_totals(lines: Iterable[CartLine]) -> CartTotals:
    lines = list(lines)
    subtotal = sum(line_total(l) for l in lines)
    return CartTotals(
        subtotal=money(subtotal),
        savings=money(sum(line_savings(l) for l in lines)),
        total=money(subtotal),
        item_count=sum(l.quantity for l in lines),
    )


def replacement_quote(mrp: float, discount_percentage: float) -> ReplacementQuote:
    """Price of a warranty replacement: MRP less the slab discount, GST inclusive."""
    mrp = float(mrp or 0)
    pct = max(0.0, min(100.0, float(discount_percentage or 0)))
    discounted = mrp * (1 - pct / 100)
    return ReplacementQuote(
        mrp=money(mrp),
        discount_percentage=pct,
        discount_amount=money(mrp - discounted),
        discounted_price=money(discounted),
        gst_included=money(discounted * GST_RATE / (1 + GST_RATE)),
    )
