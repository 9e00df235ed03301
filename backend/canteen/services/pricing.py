# Overview: Server-side order pricing: per-line GST (inclusive/exclusive), discounts and service charge.

"""
All money is Decimal, rounded half-up to two places per line and per total.

GST:
- EXCLUDE: tax = after_discount * rate / 100, line total = after_discount + tax
- INCLUDE: tax = after_discount * rate / (100 + rate), line total = after_discount

CGST and SGST are each half of the tax (SGST absorbs the odd paisa).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from ..models.catalog import GST_EXCLUDE, GST_INCLUDE


TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")


def quantize(value) -> Decimal:
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LinePrice:
    unit_price: Decimal
    quantity: int
    tax_rate: Decimal
    gst_type: str
    gross: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    cgst: Decimal
    sgst: Decimal
    service_charge: Decimal
    total: Decimal


def price_line(unit_price, quantity: int, *, tax_rate=ZERO, gst_type: str = GST_EXCLUDE, discount_percentage=ZERO) -> LinePrice:
    unit_price = Decimal(unit_price)
    rate = Decimal(tax_rate or 0)
    pct = Decimal(discount_percentage or 0)

    gross = quantize(unit_price * quantity)
    discount = quantize(gross * pct / HUNDRED)
    after_discount = gross - discount

    if gst_type == GST_INCLUDE:
        tax = quantize(after_discount * rate / (HUNDRED + rate)) if rate else ZERO
        total = after_discount
    else:
        tax = quantize(after_discount * rate / HUNDRED)
        total = after_discount + tax

    return LinePrice(
        unit_price=quantize(unit_price),
        quantity=quantity,
        tax_rate=rate,
        gst_type=gst_type,
        gross=gross,
        discount=discount,
        tax=quantize(tax),
        total=quantize(total),
    )


def total_order(lines: list[LinePrice], *, service_charge_percent=ZERO) -> OrderTotals:
    subtotal = sum((line.gross for line in lines), ZERO)
    discount = sum((line.discount for line in lines), ZERO)
    tax = sum((line.tax for line in lines), ZERO)
    lines_total = sum((line.total for line in lines), ZERO)

    service_charge = quantize((subtotal - discount) * Decimal(service_charge_percent or 0) / HUNDRED)
    cgst = quantize(tax / 2)
    sgst = tax - cgst

    return OrderTotals(
        subtotal=quantize(subtotal),
        discount=quantize(discount),
        tax=quantize(tax),
        cgst=cgst,
        sgst=quantize(sgst),
        service_charge=service_charge,
        total=quantize(lines_total + service_charge),
    )


def combo_derived(actual_price, current_price, *, gst_type: str, gst_tax_rate) -> dict:
    """discount, discount_percentage, gst_amount and final_price of a combo."""
    actual = Decimal(actual_price)
    current = Decimal(current_price)
    rate = Decimal(gst_tax_rate or 0)

    discount = quantize(actual - current)
    discount_percentage = quantize(discount / actual * HUNDRED) if actual else ZERO
    if gst_type == GST_INCLUDE:
        gst_amount = quantize(current * rate / (HUNDRED + rate)) if rate else ZERO
        final_price = quantize(current)
    else:
        gst_amount = quantize(current * rate / HUNDRED)
        final_price = quantize(current + gst_amount)
    return {
        "discount": discount,
        "discount_percentage": discount_percentage,
        "gst_amount": gst_amount,
        "final_price": final_price,
    }
